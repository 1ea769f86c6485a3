"""
EC2 resource operations for the AMI build.

Every API call goes through ``ResourceProvisioner._call`` so that a failed
call always surfaces as ProvisioningCallFailure carrying the full error
text, and each waiter is a bounded fixed-interval poll.
"""

import logging
import os
import tempfile
import uuid
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import ClientError

from .config import Settings
from .errors import PollTimeout, ProvisioningCallFailure, ResponseParseError
from .models import InstanceInfo, ProvisionedResources, RunContext, TarballFootprint, VolumeInfo
from .poll import wait_until
from .tables import lookup_base_image

logger = logging.getLogger(__name__)

SSH_PORT = 22


def error_code(error: ProvisioningCallFailure) -> Optional[str]:
    cause = error.__cause__
    if isinstance(cause, ClientError):
        return cause.response.get("Error", {}).get("Code")
    return None


def is_not_found(error: ProvisioningCallFailure) -> bool:
    code = error_code(error) or ""
    return code.endswith(".NotFound")


def resolve_volume_size(requested: int, measured: int) -> int:
    """
    Resolve the volume size in GB.

    Returns:
        ``max(requested, measured)``
    """
    if requested and requested < measured:
        logger.warning(
            f"Requested volume size {requested} GB is smaller than the image "
            f"({measured} GB); using {measured} GB"
        )
    return max(requested, measured)


class ResourceProvisioner:
    """Create, attach, detach and delete the ephemeral EC2 resources of a run."""

    def __init__(
        self,
        ec2_client: Any,
        context: RunContext,
        settings: Settings,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.ec2 = ec2_client
        self.context = context
        self.settings = settings
        self._sleep = sleep

    def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            return getattr(self.ec2, operation)(**kwargs)
        except ClientError as e:
            raise ProvisioningCallFailure(operation, str(e)) from e

    def _wait(self, check: Callable[[], bool], max_attempts: int) -> bool:
        kwargs = {"interval": self.settings.poll_interval}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return wait_until(check, max_attempts, **kwargs)

    # ------------------------------------------------------------------
    # Network rule and keypair
    # ------------------------------------------------------------------

    def ensure_network_rule(self, resources: ProvisionedResources) -> str:
        """
        Make sure the shared security group exists and allows SSH in.

        Both the group and its ingress rule may already exist from an
        earlier run; that is not an error.

        Returns:
            Security group name
        """
        group = self.settings.security_group
        logger.info(f"Ensuring security group {group} allows SSH from {self.settings.ssh_cidr}")

        try:
            self._call(
                "create_security_group",
                GroupName=group,
                Description="SSH access for EBS AMI builder instances",
            )
            logger.info(f"✓ Security group {group} created")
        except ProvisioningCallFailure as e:
            if error_code(e) != "InvalidGroup.Duplicate":
                raise
            logger.info(f"Security group {group} already exists")
        resources.security_group = group

        try:
            self._call(
                "authorize_security_group_ingress",
                GroupName=group,
                IpPermissions=[{
                    "IpProtocol": "tcp",
                    "FromPort": SSH_PORT,
                    "ToPort": SSH_PORT,
                    "IpRanges": [{"CidrIp": self.settings.ssh_cidr}],
                }],
            )
            logger.info(f"✓ SSH ingress authorized on {group}")
        except ProvisioningCallFailure as e:
            if error_code(e) != "InvalidPermission.Duplicate":
                raise
            logger.info(f"SSH ingress already authorized on {group}")
        return group

    def create_keypair(self, resources: ProvisionedResources) -> str:
        """
        Create a uniquely named keypair and save its private key locally.

        Returns:
            Path to the private key file
        """
        key_name = f"{self.settings.key_prefix}-{uuid.uuid4().hex[:8]}"
        logger.info(f"Creating keypair {key_name}")

        response = self._call("create_key_pair", KeyName=key_name)
        resources.key_name = key_name
        material = response.get("KeyMaterial")
        if not material:
            raise ResponseParseError("create_key_pair", "KeyMaterial")

        resources.key_path = save_private_key(material, key_name)
        logger.info(f"✓ Keypair {key_name} created")
        return resources.key_path

    # ------------------------------------------------------------------
    # Instance
    # ------------------------------------------------------------------

    def start_instance(self, resources: ProvisionedResources, image_id: Optional[str] = None) -> str:
        """
        Launch one instance from the base image (or ``image_id``).

        Returns:
            Instance id
        """
        image_id = image_id or lookup_base_image(self.context.region, self.context.arch)
        logger.info(f"Launching {self.settings.instance_type} instance from {image_id}")

        response = self._call(
            "run_instances",
            ImageId=image_id,
            MinCount=1,
            MaxCount=1,
            InstanceType=self.settings.instance_type,
            KeyName=resources.key_name,
            SecurityGroups=[resources.security_group],
        )
        instances = response.get("Instances") or [{}]
        info = InstanceInfo.from_response(instances[0])
        if not info.instance_id:
            raise ResponseParseError("run_instances", "InstanceId", response)
        resources.instance_id = info.instance_id
        if not info.availability_zone:
            raise ResponseParseError("run_instances", "Placement.AvailabilityZone", response)
        resources.availability_zone = info.availability_zone

        logger.info(f"✓ Instance {info.instance_id} launched in {info.availability_zone}")
        return info.instance_id

    def describe_instance(self, instance_id: str) -> Optional[InstanceInfo]:
        try:
            response = self._call("describe_instances", InstanceIds=[instance_id])
        except ProvisioningCallFailure as e:
            if is_not_found(e):
                return None
            raise
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return InstanceInfo.from_response(instance)
        return None

    def instance_state(self, instance_id: str) -> Optional[str]:
        info = self.describe_instance(instance_id)
        return info.state if info else None

    def wait_for_instance_state(self, instance_id: str, state: str, max_attempts: Optional[int] = None) -> bool:
        logger.info(f"Waiting for instance {instance_id} to be {state}")
        return self._wait(
            lambda: self.instance_state(instance_id) == state,
            max_attempts or self.settings.instance_attempts,
        )

    def wait_for_instance_running(self, resources: ProvisionedResources) -> None:
        if not self.wait_for_instance_state(resources.instance_id, "running"):
            raise PollTimeout(f"instance {resources.instance_id}", "running")
        logger.info(f"✓ Instance {resources.instance_id} is running")

    def wait_for_hostname(self, resources: ProvisionedResources) -> str:
        """Poll until the instance has a public DNS name, and record it."""
        found = {}

        def check() -> bool:
            info = self.describe_instance(resources.instance_id)
            if info and info.hostname:
                found["hostname"] = info.hostname
                return True
            return False

        logger.info(f"Waiting for instance {resources.instance_id} to get a hostname")
        if not self._wait(check, self.settings.instance_attempts):
            raise PollTimeout(f"instance {resources.instance_id}", "hostname assigned")
        resources.hostname = found["hostname"]
        logger.info(f"✓ Instance hostname: {resources.hostname}")
        return resources.hostname

    def stop_instance(self, resources: ProvisionedResources) -> None:
        logger.info(f"Stopping instance {resources.instance_id}")
        self._call("stop_instances", InstanceIds=[resources.instance_id])
        if not self.wait_for_instance_state(resources.instance_id, "stopped"):
            raise PollTimeout(f"instance {resources.instance_id}", "stopped")
        logger.info(f"✓ Instance {resources.instance_id} stopped")

    def terminate_instance(self, instance_id: str) -> None:
        logger.info(f"Terminating instance {instance_id}")
        self._call("terminate_instances", InstanceIds=[instance_id])

    def wait_for_instance_terminated(self, instance_id: str) -> bool:
        # An instance that has vanished from describe results is gone too
        logger.info(f"Waiting for instance {instance_id} to be terminated")
        return self._wait(
            lambda: self.instance_state(instance_id) in (None, "terminated"),
            self.settings.teardown_attempts,
        )

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    def compute_volume_size(self, footprint: TarballFootprint) -> int:
        """Resolve and record the image volume size for this run."""
        size = resolve_volume_size(self.context.volume_size, footprint.size_gb)
        self.context.resolved_volume_size = size
        logger.info(f"Image volume size: {size} GB")
        return size

    def describe_volume(self, volume_id: str) -> Optional[VolumeInfo]:
        try:
            response = self._call("describe_volumes", VolumeIds=[volume_id])
        except ProvisioningCallFailure as e:
            if is_not_found(e):
                return None
            raise
        volumes = response.get("Volumes") or []
        return VolumeInfo.from_response(volumes[0]) if volumes else None

    def wait_for_volume_state(self, volume_id: str, state: str, max_attempts: Optional[int] = None) -> bool:
        def check() -> bool:
            info = self.describe_volume(volume_id)
            return info is not None and info.state == state

        logger.info(f"Waiting for volume {volume_id} to be {state}")
        return self._wait(check, max_attempts or self.settings.volume_attempts)

    def wait_for_attachment(self, volume_id: str) -> bool:
        def check() -> bool:
            info = self.describe_volume(volume_id)
            return info is not None and info.attachment_state == "attached"

        logger.info(f"Waiting for volume {volume_id} to be attached")
        return self._wait(check, self.settings.volume_attempts)

    def wait_for_volume_released(self, volume_id: str, max_attempts: Optional[int] = None) -> bool:
        """Poll until the volume is available or no longer exists."""
        def check() -> bool:
            info = self.describe_volume(volume_id)
            return info is None or info.state == "available"

        logger.info(f"Waiting for volume {volume_id} to be released")
        return self._wait(check, max_attempts or self.settings.volume_attempts)

    def create_and_attach_volume(self, resources: ProvisionedResources) -> str:
        """
        Create the image volume next to the instance and attach it as a
        secondary device.

        Returns:
            Volume id
        """
        size = self.context.resolved_volume_size
        logger.info(f"Creating {size} GB volume in {resources.availability_zone}")
        response = self._call(
            "create_volume",
            Size=size,
            AvailabilityZone=resources.availability_zone,
        )
        volume_id = response.get("VolumeId")
        if not volume_id:
            raise ResponseParseError("create_volume", "VolumeId", response)
        resources.image_volume_id = volume_id
        logger.info(f"✓ Volume {volume_id} created")

        if not self.wait_for_volume_state(volume_id, "available"):
            raise PollTimeout(f"volume {volume_id}", "available")
        if not self.wait_for_instance_state(resources.instance_id, "running"):
            raise PollTimeout(f"instance {resources.instance_id}", "running")

        self.attach_volume(volume_id, resources.instance_id, self.settings.secondary_device)
        return volume_id

    def attach_volume(self, volume_id: str, instance_id: str, device: str) -> None:
        logger.info(f"Attaching volume {volume_id} to {instance_id} as {device}")
        self._call("attach_volume", VolumeId=volume_id, InstanceId=instance_id, Device=device)
        if not self.wait_for_attachment(volume_id):
            raise PollTimeout(f"volume {volume_id}", "attached")
        logger.info(f"✓ Volume {volume_id} attached as {device}")

    def detach_volume(self, volume_id: str) -> None:
        logger.info(f"Detaching volume {volume_id}")
        self._call("detach_volume", VolumeId=volume_id)

    def swap_root_volume(self, resources: ProvisionedResources) -> None:
        """
        Replace the stopped instance's root volume with the image volume.

        The original root volume is recorded so teardown deletes it.
        """
        info = self.describe_instance(resources.instance_id)
        if info is None or not info.root_volume_id or not info.root_device_name:
            raise ResponseParseError("describe_instances", "root device volume")

        self.detach_volume(info.root_volume_id)
        resources.root_volume_id = info.root_volume_id
        self.detach_volume(resources.image_volume_id)

        if not self.wait_for_volume_state(info.root_volume_id, "available"):
            raise PollTimeout(f"root volume {info.root_volume_id}", "available")
        if not self.wait_for_volume_state(resources.image_volume_id, "available"):
            raise PollTimeout(f"volume {resources.image_volume_id}", "available")

        self.attach_volume(resources.image_volume_id, resources.instance_id, info.root_device_name)

    def delete_volume(self, volume_id: str) -> None:
        logger.info(f"Deleting volume {volume_id}")
        self._call("delete_volume", VolumeId=volume_id)

    # ------------------------------------------------------------------
    # Snapshots and images
    # ------------------------------------------------------------------

    def create_snapshot(self, resources: ProvisionedResources) -> str:
        logger.info(f"Creating snapshot of volume {resources.image_volume_id}")
        response = self._call(
            "create_snapshot",
            VolumeId=resources.image_volume_id,
            Description=self.context.description or self.context.name,
        )
        snapshot_id = response.get("SnapshotId")
        if not snapshot_id:
            raise ResponseParseError("create_snapshot", "SnapshotId", response)
        resources.snapshot_id = snapshot_id
        logger.info(f"✓ Snapshot {snapshot_id} started")
        return snapshot_id

    def snapshot_state(self, snapshot_id: str) -> Optional[str]:
        try:
            response = self._call("describe_snapshots", SnapshotIds=[snapshot_id])
        except ProvisioningCallFailure as e:
            if is_not_found(e):
                return None
            raise
        snapshots = response.get("Snapshots") or []
        return snapshots[0].get("State") if snapshots else None

    def wait_for_snapshot_completed(self, snapshot_id: str) -> None:
        logger.info(f"Waiting for snapshot {snapshot_id} to complete")
        if not self._wait(lambda: self.snapshot_state(snapshot_id) == "completed",
                          self.settings.snapshot_attempts):
            raise PollTimeout(f"snapshot {snapshot_id}", "completed")
        logger.info(f"✓ Snapshot {snapshot_id} completed")

    def delete_snapshot(self, snapshot_id: str) -> None:
        logger.info(f"Deleting snapshot {snapshot_id}")
        self._call("delete_snapshot", SnapshotId=snapshot_id)

    def register_image(self, name: str, snapshot_id: str, kernel_id: str) -> str:
        """
        Register a paravirtual EBS-backed image from a completed snapshot.

        Returns:
            Image id
        """
        response = self._call(
            "register_image",
            Name=name,
            Description=self.context.description,
            Architecture=self.context.arch,
            KernelId=kernel_id,
            RootDeviceName="/dev/sda1",
            VirtualizationType="paravirtual",
            BlockDeviceMappings=[{
                "DeviceName": "/dev/sda1",
                "Ebs": {"SnapshotId": snapshot_id, "DeleteOnTermination": True},
            }],
        )
        image_id = response.get("ImageId")
        if not image_id:
            raise ResponseParseError("register_image", "ImageId", response)
        return image_id

    def create_image(self, instance_id: str, name: str) -> str:
        response = self._call(
            "create_image",
            InstanceId=instance_id,
            Name=name,
            Description=self.context.description,
        )
        image_id = response.get("ImageId")
        if not image_id:
            raise ResponseParseError("create_image", "ImageId", response)
        return image_id

    def image_state(self, image_id: str) -> Optional[str]:
        try:
            response = self._call("describe_images", ImageIds=[image_id])
        except ProvisioningCallFailure as e:
            if is_not_found(e):
                return None
            raise
        images = response.get("Images") or []
        return images[0].get("State") if images else None

    def wait_for_image_available(self, image_id: str) -> None:
        logger.info(f"Waiting for image {image_id} to be available")
        if not self._wait(lambda: self.image_state(image_id) == "available",
                          self.settings.image_attempts):
            raise PollTimeout(f"image {image_id}", "available")
        logger.info(f"✓ Image {image_id} is available")

    def make_image_public(self, image_id: str) -> None:
        logger.info(f"Making image {image_id} public")
        self._call(
            "modify_image_attribute",
            ImageId=image_id,
            LaunchPermission={"Add": [{"Group": "all"}]},
        )
        logger.info(f"✓ Image {image_id} is public")

    # ------------------------------------------------------------------
    # Keypair teardown
    # ------------------------------------------------------------------

    def delete_keypair(self, key_name: str) -> None:
        logger.info(f"Deleting keypair {key_name}")
        self._call("delete_key_pair", KeyName=key_name)


def save_private_key(material: str, key_name: str) -> str:
    """
    Save a private key for the SSH client to connect to the instance.

    Args:
        material: Private key in PEM format
        key_name: Keypair name, used in the file name

    Returns:
        Path to the key file (mode 600)
    """
    fd, key_path = tempfile.mkstemp(suffix=".pem", prefix=f"{key_name}-")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(material)
        os.chmod(key_path, 0o600)
    except OSError as e:
        try:
            os.unlink(key_path)
        except OSError:
            pass
        raise ProvisioningCallFailure("save private key", str(e))

    logger.info(f"SSH private key saved to: {key_path}")
    return key_path
