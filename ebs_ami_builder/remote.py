"""
Remote command execution and file transfer on the build instance.
"""

import logging
import os
import shlex
import time
from typing import Callable, Optional

import paramiko

from .errors import RemoteCommandFailure, SSHConnectTimeout
from .models import TarballFootprint

logger = logging.getLogger(__name__)


class RemoteExecutor:
    """
    SSH session to a freshly launched instance.

    The instance has no known host identity yet, so host keys are accepted
    unseen. Authentication uses the given key file only and never prompts.
    """

    def __init__(
        self,
        hostname: str,
        username: str,
        key_filename: str,
        connect_timeout: float = 10,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.hostname = hostname
        self.username = username
        self.key_filename = key_filename
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory
        self._sleep = sleep
        self._client: Optional[paramiko.SSHClient] = None

    def connect_and_wait(self, max_attempts: int = 50, interval: float = 3) -> None:
        """
        Wait until the instance accepts an SSH session.

        Each attempt connects and runs a trivial command.

        Args:
            max_attempts: Maximum number of connection attempts
            interval: Delay between attempts in seconds

        Raises:
            SSHConnectTimeout: If no attempt succeeds
        """
        logger.info(f"Verifying SSH connectivity to {self.username}@{self.hostname}...")

        for attempt in range(1, max_attempts + 1):
            client = self._client_factory()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                logger.debug(f"SSH connection attempt {attempt}/{max_attempts}")
                client.connect(
                    hostname=self.hostname,
                    username=self.username,
                    key_filename=self.key_filename,
                    timeout=self.connect_timeout,
                    banner_timeout=self.connect_timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
                self._client = client
                self._run("true", stream_output=False)
                # Keep the session alive through long image writes
                client.get_transport().set_keepalive(30)
                logger.info("✓ SSH connection established")
                return
            except (paramiko.SSHException, OSError, RemoteCommandFailure) as e:
                self._client = None
                client.close()
                logger.debug(f"SSH connection failed: {e}")
                if attempt < max_attempts:
                    self._sleep(interval)

        logger.error(f"Failed to establish SSH connection after {max_attempts} attempts")
        raise SSHConnectTimeout(self.hostname)

    def execute(self, command: str) -> str:
        """
        Run a command on the instance.

        Args:
            command: Shell command to execute

        Returns:
            Combined stdout/stderr output

        Raises:
            RemoteCommandFailure: If the command exits non-zero
        """
        return self._run(command)

    def _run(self, command: str, stream_output: bool = True) -> str:
        if self._client is None:
            raise RemoteCommandFailure(command, "not connected")

        logger.debug(f"Executing command: {command}")
        try:
            channel = self._client.get_transport().open_session()
            channel.set_combine_stderr(True)
            channel.exec_command(command)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteCommandFailure(command, str(e))

        lines = []
        pending = ""

        def consume(data: bytes) -> None:
            nonlocal pending
            pending += data.decode("utf-8", errors="replace")
            *complete, pending = pending.split("\n")
            for line in complete:
                line = line.rstrip()
                if line:
                    lines.append(line)
                    if stream_output:
                        logger.info(f"  {line}")

        while not channel.exit_status_ready():
            if channel.recv_ready():
                consume(channel.recv(4096))
            time.sleep(0.1)

        # Read any remaining data after the command completes
        while channel.recv_ready():
            consume(channel.recv(4096))
        consume(b"\n")

        exit_code = channel.recv_exit_status()
        output = "\n".join(lines)
        if exit_code != 0:
            raise RemoteCommandFailure(command, f"exit status {exit_code}\n{output}")
        return output

    def copy_file(self, local_path: str) -> str:
        """
        Copy a local file into the remote user's home directory.

        Args:
            local_path: File to transfer

        Returns:
            Remote file name (relative to the home directory)
        """
        remote_name = os.path.basename(local_path)
        if self._client is None:
            raise RemoteCommandFailure(f"copy {local_path}", "not connected")

        logger.info(f"Copying {local_path} to {self.hostname}:~/{remote_name} ...")
        try:
            sftp = self._client.open_sftp()
            try:
                sftp.put(local_path, remote_name)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteCommandFailure(f"copy {local_path}", str(e))

        logger.info(f"✓ {remote_name} uploaded")
        return remote_name

    def write_image(self, remote_tarball: str, footprint: TarballFootprint, device: str) -> str:
        """
        Stream the image member of an uploaded tarball onto a block device.

        ``device`` is the name the volume was attached under (``/dev/sdX``);
        Xen kernels may expose it as ``/dev/xvdX`` instead. The pipeline
        runs under ``pipefail`` so a failed extraction fails the command.
        """
        xen_device = device.replace("/dev/sd", "/dev/xvd", 1)
        script = (
            "set -o pipefail; "
            f"dev={shlex.quote(device)}; "
            f"[ -b \"$dev\" ] || dev={shlex.quote(xen_device)}; "
            f"[ -b \"$dev\" ] || {{ echo \"no block device {device}\" >&2; exit 1; }}; "
            f"tar -xOf {shlex.quote(remote_tarball)} {shlex.quote(footprint.member)} "
            f"| dd of=\"$dev\" bs=1M && sync"
        )
        command = f"bash -c {shlex.quote(script)}"
        if self.username != "root":
            command = f"sudo {command}"

        logger.info(f"Writing {footprint.member} to {device} ...")
        return self.execute(command)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
