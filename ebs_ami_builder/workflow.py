"""
The AMI build pipeline.

Each step either advances the run to its next Stage or raises. Any raise
tears down everything created so far before the error propagates.
"""

import logging
from typing import Callable, List, Optional, Tuple

from .cleanup import CleanupCoordinator
from .imagetest import ImageTester, RemoteFactory
from .models import BuildResult, CleanupFailure, ProvisionedResources, RunContext, Stage, TarballFootprint
from .provisioner import ResourceProvisioner
from .registrar import RegistrationStrategy
from .remote import RemoteExecutor

logger = logging.getLogger(__name__)


def banner(title: str, level: int = logging.INFO) -> None:
    logger.log(level, "")
    logger.log(level, "=" * 80)
    logger.log(level, title)
    logger.log(level, "=" * 80)


class WorkflowOrchestrator:
    """Drive one build from Init to Done, cleaning up on any failure."""

    def __init__(
        self,
        context: RunContext,
        footprint: TarballFootprint,
        provisioner: ResourceProvisioner,
        strategy: RegistrationStrategy,
        cleanup: CleanupCoordinator,
        remote_factory: RemoteFactory,
        tester: Optional[ImageTester] = None,
        ssh_attempts: int = 50,
        ssh_interval: float = 3,
    ):
        self.context = context
        self.footprint = footprint
        self.provisioner = provisioner
        self.strategy = strategy
        self.cleanup = cleanup
        self.remote_factory = remote_factory
        self.tester = tester
        self.ssh_attempts = ssh_attempts
        self.ssh_interval = ssh_interval

        self.stage = Stage.INIT
        self.failed_after: Optional[Stage] = None
        self.resources = ProvisionedResources()
        self.remote: Optional[RemoteExecutor] = None
        self.remote_tarball: Optional[str] = None
        self.cleanup_failures: List[CleanupFailure] = []

    def _pipeline(self) -> List[Tuple[Stage, str, Callable[[], object]]]:
        steps = [
            (Stage.NETWORK_RULE_READY, "Ensuring Network Rule", self._network_rule),
            (Stage.KEYPAIR_READY, "Creating Keypair", self._keypair),
            (Stage.INSTANCE_RUNNING, "Launching Build Instance", self._instance),
            (Stage.HOSTNAME_AND_VOLUME_KNOWN, "Resolving Hostname and Volume Size", self._hostname_and_size),
            (Stage.VOLUME_ATTACHED, "Creating and Attaching Image Volume", self._volume),
            (Stage.SSH_REACHABLE, "Connecting to Build Instance", self._connect),
            (Stage.IMAGE_UPLOADED, "Uploading Image Tarball", self._upload),
            (Stage.IMAGE_WRITTEN, "Writing Image to Volume", self._write),
            (Stage.IMAGE_REGISTERED, "Registering Image", self._register),
            (Stage.CLEANED_UP, "Cleaning Up Build Resources", self._cleanup),
        ]
        if self.context.test_ami:
            steps.append((Stage.TESTED, "Testing Image", self._test))
        if self.context.public:
            steps.append((Stage.PUBLISHED, "Publishing Image", self._publish))
        return steps

    def run(self) -> BuildResult:
        """
        Execute the pipeline.

        Returns:
            BuildResult with the registered image id and name

        Raises:
            AmiBuilderError (or any unexpected error) after cleanup has run
        """
        try:
            for stage, title, step in self._pipeline():
                banner(title)
                step()
                self._reached(stage)
        except Exception as e:
            self._abort(e)
            raise

        self.stage = Stage.DONE
        return BuildResult(
            image_id=self.resources.image_id,
            image_name=self.resources.image_name,
            region=self.context.region,
            cleanup_failures=self.cleanup_failures,
        )

    def _reached(self, stage: Stage) -> None:
        self.stage = stage
        logger.debug(f"Stage: {stage.value}")

    def _abort(self, error: Exception) -> None:
        self.failed_after = self.stage
        self.stage = Stage.ABORTING
        banner("AMI BUILD FAILED", logging.ERROR)
        logger.error(f"Failed after stage {self.failed_after.value}: {error}")
        self._close_remote()
        try:
            self.cleanup_failures.extend(self.cleanup.tear_down(self.resources))
        except Exception as cleanup_error:
            logger.error(f"Failed to cleanup infrastructure: {cleanup_error}")

    def _close_remote(self) -> None:
        if self.remote is not None:
            self.remote.close()
            self.remote = None

    # Steps

    def _network_rule(self) -> None:
        self.provisioner.ensure_network_rule(self.resources)

    def _keypair(self) -> None:
        self.provisioner.create_keypair(self.resources)

    def _instance(self) -> None:
        self.provisioner.start_instance(self.resources)
        self.provisioner.wait_for_instance_running(self.resources)

    def _hostname_and_size(self) -> None:
        self.provisioner.wait_for_hostname(self.resources)
        self.provisioner.compute_volume_size(self.footprint)

    def _volume(self) -> None:
        self.provisioner.create_and_attach_volume(self.resources)

    def _connect(self) -> None:
        self.remote = self.remote_factory(self.resources.hostname, self.resources.key_path)
        self.remote.connect_and_wait(self.ssh_attempts, self.ssh_interval)

    def _upload(self) -> None:
        self.remote_tarball = self.remote.copy_file(self.context.tarball)

    def _write(self) -> None:
        self.remote.write_image(
            self.remote_tarball, self.footprint, self.provisioner.settings.secondary_device)
        self._close_remote()

    def _register(self) -> None:
        self.strategy.finalize(self.resources, report=self._reached)

    def _cleanup(self) -> None:
        self.cleanup_failures.extend(self.cleanup.tear_down(self.resources))

    def _test(self) -> None:
        self.tester.run(self.resources.image_id)

    def _publish(self) -> None:
        self.provisioner.make_image_public(self.resources.image_id)
