"""
Functional test of a freshly built image: boot it and log in.
"""

import logging
from typing import Callable

from .cleanup import CleanupCoordinator
from .models import ProvisionedResources
from .provisioner import ResourceProvisioner
from .remote import RemoteExecutor

logger = logging.getLogger(__name__)

RemoteFactory = Callable[[str, str], RemoteExecutor]


class ImageTester:
    """
    Launch an instance from the built image and check that it accepts SSH.

    The test owns its own keypair and instance and always removes them,
    whatever the outcome.
    """

    def __init__(
        self,
        provisioner: ResourceProvisioner,
        cleanup: CleanupCoordinator,
        remote_factory: RemoteFactory,
        ssh_attempts: int = 50,
        ssh_interval: float = 3,
    ):
        self.provisioner = provisioner
        self.cleanup = cleanup
        self.remote_factory = remote_factory
        self.ssh_attempts = ssh_attempts
        self.ssh_interval = ssh_interval

    def run(self, image_id: str) -> str:
        """
        Boot ``image_id`` and run ``uname -a`` on it.

        Returns:
            Output of ``uname -a``
        """
        logger.info(f"Testing image {image_id}")
        self.provisioner.wait_for_image_available(image_id)

        resources = ProvisionedResources()
        remote = None
        try:
            self.provisioner.ensure_network_rule(resources)
            self.provisioner.create_keypair(resources)
            self.provisioner.start_instance(resources, image_id=image_id)
            self.provisioner.wait_for_instance_running(resources)
            self.provisioner.wait_for_hostname(resources)

            remote = self.remote_factory(resources.hostname, resources.key_path)
            remote.connect_and_wait(self.ssh_attempts, self.ssh_interval)
            output = remote.execute("uname -a")
            logger.info(f"✓ Image {image_id} booted: {output}")
            return output
        finally:
            if remote is not None:
                remote.close()
            self.cleanup.tear_down(resources)
