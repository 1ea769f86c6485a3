"""
Error taxonomy for the AMI build workflow.

Every error carries the process exit status the CLI should return for it.
"""

from typing import Optional


class AmiBuilderError(Exception):
    """Base exception for AMI build errors."""
    exit_code = 10


class UsageError(AmiBuilderError):
    """Raised for bad command-line usage detected before provisioning."""
    exit_code = 1


class UnknownRegionOrArchitecture(AmiBuilderError):
    """Raised when no lookup table entry exists for a region/architecture."""
    exit_code = 1

    def __init__(self, region: str, arch: str, table: str = "base image"):
        self.region = region
        self.arch = arch
        super().__init__(f"No {table} known for region {region!r} and architecture {arch!r}")


class ToolMissing(AmiBuilderError):
    """Raised when a required external tool is not available."""
    exit_code = 2


class CredentialMissing(AmiBuilderError):
    """Raised when a required credential variable is unset."""
    exit_code = 3

    def __init__(self, names):
        self.names = list(names)
        super().__init__(f"Required credential(s) not set: {', '.join(self.names)}")


class ProvisioningCallFailure(AmiBuilderError):
    """
    An EC2 API call or remote command failed.

    The captured diagnostic output is kept verbatim in ``output``.
    """
    exit_code = 10

    def __init__(self, operation: str, output: str = ""):
        self.operation = operation
        self.output = output
        message = f"{operation} failed"
        if output:
            message = f"{message}: {output}"
        super().__init__(message)


class RemoteCommandFailure(ProvisioningCallFailure):
    """A command or file transfer on the build instance failed."""


class ResponseParseError(ProvisioningCallFailure):
    """A call succeeded but the field we need was absent from its response."""

    def __init__(self, operation: str, field: str, response: Optional[dict] = None):
        self.field = field
        output = f"no {field} in response"
        if response is not None:
            output = f"{output} ({response})"
        super().__init__(operation, output)


class PollTimeout(AmiBuilderError):
    """A bounded wait ran out of attempts before the resource reached its state."""
    exit_code = 10

    def __init__(self, resource: str, target_state: str, message: Optional[str] = None):
        self.resource = resource
        self.target_state = target_state
        super().__init__(message or f"{resource} did not reach state {target_state!r} (timed out)")


class SSHConnectTimeout(PollTimeout):
    """The build instance never accepted an SSH session."""
    exit_code = 1

    def __init__(self, hostname: str):
        super().__init__(hostname, "reachable", "failed to connect via SSH (timed out)")
