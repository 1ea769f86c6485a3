"""
Data model shared by the workflow components.
"""

from dataclasses import dataclass, field
from enum import Enum
import math
from typing import Any, Dict, List, Optional

GIB = 1024 ** 3

# Base-OS families that need a bootable root device and are imaged by
# swapping the root volume of a stopped instance.
ROOT_SWAP_FAMILIES = frozenset({"SLES11_SP1"})


class Stage(Enum):
    """Workflow states, in pipeline order."""
    INIT = "Init"
    NETWORK_RULE_READY = "NetworkRuleReady"
    KEYPAIR_READY = "KeypairReady"
    INSTANCE_RUNNING = "InstanceRunning"
    HOSTNAME_AND_VOLUME_KNOWN = "HostnameAndVolumeKnown"
    VOLUME_ATTACHED = "VolumeAttached"
    SSH_REACHABLE = "SSHReachable"
    IMAGE_UPLOADED = "ImageUploaded"
    IMAGE_WRITTEN = "ImageWritten"
    SNAPSHOT_READY = "SnapshotReady"
    ROOT_VOLUME_SWAPPED = "RootVolumeSwapped"
    IMAGE_REGISTERED = "ImageRegistered"
    CLEANED_UP = "CleanedUp"
    TESTED = "Tested"
    PUBLISHED = "Published"
    DONE = "Done"
    ABORTING = "Aborting"


@dataclass
class RunContext:
    """
    Per-run configuration resolved from the command line.

    Only ``resolved_volume_size`` changes after construction.
    """
    region: str
    arch: str
    base: str
    tarball: str
    name: str
    description: str = ""
    volume_size: int = 0
    test_ami: bool = False
    public: bool = False
    resolved_volume_size: Optional[int] = None

    @property
    def uses_root_swap(self) -> bool:
        return self.base in ROOT_SWAP_FAMILIES


@dataclass
class ProvisionedResources:
    """
    Everything the run has created so far.

    An empty field means the resource was never created (or has already
    been removed), so cleanup has nothing to undo for it.
    """
    security_group: Optional[str] = None
    key_name: Optional[str] = None
    key_path: Optional[str] = None
    instance_id: Optional[str] = None
    availability_zone: Optional[str] = None
    hostname: Optional[str] = None
    image_volume_id: Optional[str] = None
    root_volume_id: Optional[str] = None
    snapshot_id: Optional[str] = None
    image_id: Optional[str] = None
    image_name: Optional[str] = None


@dataclass
class InstanceInfo:
    instance_id: str
    state: Optional[str] = None
    availability_zone: Optional[str] = None
    hostname: Optional[str] = None
    root_device_name: Optional[str] = None
    root_volume_id: Optional[str] = None

    @classmethod
    def from_response(cls, instance: Dict[str, Any]) -> "InstanceInfo":
        """Build from one entry of ``Reservations[].Instances[]``."""
        root_device = instance.get("RootDeviceName")
        root_volume = None
        for mapping in instance.get("BlockDeviceMappings", []):
            if mapping.get("DeviceName") == root_device:
                root_volume = mapping.get("Ebs", {}).get("VolumeId")
        return cls(
            instance_id=instance.get("InstanceId", ""),
            state=instance.get("State", {}).get("Name"),
            availability_zone=instance.get("Placement", {}).get("AvailabilityZone"),
            hostname=instance.get("PublicDnsName") or None,
            root_device_name=root_device,
            root_volume_id=root_volume,
        )


@dataclass
class VolumeInfo:
    volume_id: str
    state: Optional[str] = None
    attachment_state: Optional[str] = None

    @classmethod
    def from_response(cls, volume: Dict[str, Any]) -> "VolumeInfo":
        attachments = volume.get("Attachments") or []
        return cls(
            volume_id=volume.get("VolumeId", ""),
            state=volume.get("State"),
            attachment_state=attachments[0].get("State") if attachments else None,
        )


@dataclass
class TarballFootprint:
    """Apparent size of the image inside a source tarball."""
    path: str
    member: str
    size_bytes: int

    @property
    def size_gb(self) -> int:
        return int(math.ceil(self.size_bytes / GIB))


@dataclass
class CleanupFailure:
    resource: str
    resource_id: str
    message: str


@dataclass
class BuildResult:
    image_id: str
    image_name: str
    region: str
    cleanup_failures: List[CleanupFailure] = field(default_factory=list)
