"""
Best-effort teardown of everything a run created.
"""

import logging
import os
from typing import Callable, List

from .errors import ProvisioningCallFailure
from .models import CleanupFailure, ProvisionedResources
from .provisioner import ResourceProvisioner, is_not_found

logger = logging.getLogger(__name__)


class CleanupCoordinator:
    """
    Remove the ephemeral resources of a run in reverse dependency order.

    No individual failure stops the teardown; failures are logged and
    returned. The security group is shared between runs and is left alone.
    """

    def __init__(self, provisioner: ResourceProvisioner):
        self.provisioner = provisioner

    def tear_down(self, resources: ProvisionedResources) -> List[CleanupFailure]:
        """
        Delete every populated resource.

        Fields are cleared once their resource is gone, so calling this
        again is harmless.

        Args:
            resources: Resources created by the run

        Returns:
            List of resources that could not be confirmed removed
        """
        logger.warning("Cleaning up build resources...")
        failures: List[CleanupFailure] = []

        if resources.instance_id:
            self._terminate_instance(resources, failures)

        if resources.root_volume_id:
            if self._delete("volume", resources.root_volume_id, self._delete_volume, failures):
                resources.root_volume_id = None

        if resources.image_volume_id:
            if self._delete("volume", resources.image_volume_id, self._delete_volume, failures):
                resources.image_volume_id = None

        # Once an image is registered the snapshot belongs to it
        if resources.snapshot_id and not resources.image_id:
            if self._delete("snapshot", resources.snapshot_id, self.provisioner.delete_snapshot, failures):
                resources.snapshot_id = None

        if resources.key_name:
            if self._delete("keypair", resources.key_name, self.provisioner.delete_keypair, failures):
                resources.key_name = None
        if resources.key_path:
            try:
                os.unlink(resources.key_path)
                resources.key_path = None
            except FileNotFoundError:
                resources.key_path = None
            except OSError as e:
                logger.error(f"Failed to remove key file {resources.key_path}: {e}")
                failures.append(CleanupFailure("key file", resources.key_path, str(e)))

        if failures:
            logger.warning(f"{len(failures)} resource(s) could not be confirmed removed:")
            for failure in failures:
                logger.warning(f"  - {failure.resource}: {failure.resource_id} ({failure.message})")
        else:
            logger.info("✓ Cleanup complete")
        return failures

    def _terminate_instance(self, resources: ProvisionedResources, failures: List[CleanupFailure]) -> None:
        instance_id = resources.instance_id
        if not self._delete("instance", instance_id, self.provisioner.terminate_instance, failures):
            return
        try:
            terminated = self.provisioner.wait_for_instance_terminated(instance_id)
        except ProvisioningCallFailure as e:
            logger.error(f"Failed to check instance {instance_id}: {e}")
            terminated = False
        if terminated:
            logger.info(f"✓ Instance {instance_id} terminated")
        else:
            logger.warning(f"Instance {instance_id} not confirmed terminated")
            failures.append(CleanupFailure("instance", instance_id, "termination not confirmed (timed out)"))
        resources.instance_id = None
        resources.hostname = None

    def _delete_volume(self, volume_id: str) -> None:
        # Volumes detach from a terminated instance asynchronously
        self.provisioner.wait_for_volume_released(
            volume_id, self.provisioner.settings.teardown_attempts)
        self.provisioner.delete_volume(volume_id)

    def _delete(
        self,
        kind: str,
        resource_id: str,
        delete: Callable[[str], None],
        failures: List[CleanupFailure],
    ) -> bool:
        try:
            delete(resource_id)
        except ProvisioningCallFailure as e:
            if is_not_found(e):
                logger.info(f"{kind.capitalize()} {resource_id} already removed")
                return True
            logger.error(f"Failed to delete {kind} {resource_id}: {e}")
            failures.append(CleanupFailure(kind, resource_id, e.output or str(e)))
            return False
        logger.info(f"✓ {kind.capitalize()} {resource_id} removed")
        return True
