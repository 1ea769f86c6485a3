"""
Turning the written volume into a registered machine image.

Two strategies share the ``finalize(resources, report) -> (image_id, image_name)``
contract. Each tells ``report`` when it reaches its intermediate stage,
SnapshotReady or RootVolumeSwapped.

* SnapshotStrategy snapshots the detached volume and registers a
  paravirtual image from the snapshot with a PV-GRUB kernel.
* SwapStrategy swaps the volume in as the root device of the stopped build
  instance and images the instance. Base-OS families that need their own
  bootable root device use it.
"""

from datetime import datetime
import logging
from typing import Callable, Optional, Tuple

from .errors import PollTimeout, ProvisioningCallFailure, ResponseParseError
from .models import ProvisionedResources, RunContext, Stage
from .provisioner import ResourceProvisioner
from .tables import lookup_kernel

logger = logging.getLogger(__name__)

StageReporter = Callable[[Stage], None]


def register_with_retry(
    register: Callable[[str], str],
    name: str,
    now: Callable[[], datetime] = datetime.now,
) -> Tuple[str, str]:
    """
    Register an image under ``name``, retrying once with a time suffix.

    The first failure is usually a name collision with an existing image,
    so the retry disambiguates the name with the time of day. A failure of
    the retry propagates. A response without an image id is not retried,
    since the first image may already exist.

    Args:
        register: Callable taking an image name and returning the image id
        name: Requested image name
        now: Clock, injectable for tests

    Returns:
        Tuple of (image_id, image_name actually used)
    """
    try:
        return register(name), name
    except ResponseParseError:
        raise
    except ProvisioningCallFailure as e:
        retry_name = f"{name}-{now().strftime('%H%M%S')}"
        logger.warning(f"Registering image {name!r} failed: {e.output or e}")
        logger.warning(f"Retrying as {retry_name!r}")
        return register(retry_name), retry_name


class RegistrationStrategy:
    """Final conversion of the populated volume into an image."""

    def __init__(
        self,
        provisioner: ResourceProvisioner,
        context: RunContext,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.provisioner = provisioner
        self.context = context
        self._now = now

    def finalize(
        self,
        resources: ProvisionedResources,
        report: Optional[StageReporter] = None,
    ) -> Tuple[str, str]:
        raise NotImplementedError

    @staticmethod
    def _reached(report: Optional[StageReporter], stage: Stage) -> None:
        if report is not None:
            report(stage)

    def _register(self, resources: ProvisionedResources, register: Callable[[str], str]) -> Tuple[str, str]:
        image_id, image_name = register_with_retry(register, self.context.name, self._now)
        resources.image_id = image_id
        resources.image_name = image_name
        logger.info(f"✓ Image {image_id} registered as {image_name!r}")
        return image_id, image_name


class SnapshotStrategy(RegistrationStrategy):

    def __init__(self, provisioner, context, now=datetime.now):
        super().__init__(provisioner, context, now)
        # Resolved up front so an unknown region fails before any resource exists
        self.kernel_id = lookup_kernel(context.region, context.arch)

    def finalize(self, resources, report=None):
        volume_id = resources.image_volume_id
        self.provisioner.detach_volume(volume_id)
        if not self.provisioner.wait_for_volume_state(volume_id, "available"):
            raise PollTimeout(f"volume {volume_id}", "available")

        snapshot_id = self.provisioner.create_snapshot(resources)
        self.provisioner.wait_for_snapshot_completed(snapshot_id)
        self._reached(report, Stage.SNAPSHOT_READY)

        logger.info(f"Registering image from {snapshot_id} with kernel {self.kernel_id}")
        return self._register(
            resources,
            lambda name: self.provisioner.register_image(name, snapshot_id, self.kernel_id),
        )


class SwapStrategy(RegistrationStrategy):

    def finalize(self, resources, report=None):
        self.provisioner.stop_instance(resources)
        self.provisioner.swap_root_volume(resources)
        self._reached(report, Stage.ROOT_VOLUME_SWAPPED)

        logger.info(f"Creating image from instance {resources.instance_id}")
        result = self._register(
            resources,
            lambda name: self.provisioner.create_image(resources.instance_id, name),
        )
        # The instance and its volumes must outlive image creation
        self.provisioner.wait_for_image_available(resources.image_id)
        return result


def select_strategy(
    provisioner: ResourceProvisioner,
    context: RunContext,
    now: Optional[Callable[[], datetime]] = None,
) -> RegistrationStrategy:
    cls = SwapStrategy if context.uses_root_swap else SnapshotStrategy
    logger.info(f"Base {context.base!r}: using {cls.__name__}")
    return cls(provisioner, context, now or datetime.now)
