#!/usr/bin/env python3
"""
EBS AMI Builder

Use a temporary EC2 instance to write a raw disk image tarball onto an EBS
volume and register that volume as an AMI.
"""

import argparse
import logging
import sys
from typing import List, Optional

import boto3

from .cleanup import CleanupCoordinator
from .config import Settings, load_credentials
from .errors import AmiBuilderError, ProvisioningCallFailure
from .imagetest import ImageTester
from .models import RunContext
from .provisioner import ResourceProvisioner
from .registrar import select_strategy
from .remote import RemoteExecutor
from .tables import ARCHITECTURES, lookup_base_image
from .tarball import check_tarball, measure_footprint
from .workflow import WorkflowOrchestrator, banner

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(log_file: Optional[str] = "build_ami.log", level: int = logging.INFO) -> None:
    """Log to stdout and, if given, to ``log_file``."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    # boto and paramiko are chatty at INFO
    for noisy in ("botocore", "boto3", "paramiko"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class ArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with exit status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description='Create an EBS-backed AMI from a raw disk image tarball'
    )

    parser.add_argument(
        '--region',
        type=str,
        default='us-east-1',
        help='AWS region for AMI creation (default: us-east-1)'
    )

    parser.add_argument(
        '--name',
        type=str,
        required=True,
        help='Name of the AMI to register'
    )

    parser.add_argument(
        '--description',
        type=str,
        default='',
        help='Description of the AMI'
    )

    parser.add_argument(
        '--arch',
        type=str,
        default='x86_64',
        help=f"Image architecture, one of {', '.join(ARCHITECTURES)} (default: x86_64)"
    )

    parser.add_argument(
        '--base',
        type=str,
        default='default',
        help='Base OS family of the image; SLES11_SP1 images are built by root volume swap'
    )

    parser.add_argument(
        '--tarball',
        type=str,
        required=True,
        help='Tarball containing the raw disk image'
    )

    parser.add_argument(
        '--volume_size',
        type=int,
        default=0,
        help='Volume size in GB (default: derived from the image size)'
    )

    parser.add_argument(
        '--test_ami',
        action='store_true',
        help='Boot the new AMI and check that it accepts SSH'
    )

    parser.add_argument(
        '--public',
        action='store_true',
        help='Make the new AMI publicly launchable'
    )

    return parser.parse_args(argv)


def build(
    args: argparse.Namespace,
    settings: Settings,
    ec2_client=None,
    remote_factory=None,
    sleep=None,
) -> int:
    """
    Run pre-flight checks and the build pipeline.

    The EC2 client, SSH session factory and sleep function can be
    injected; by default they come from boto3, paramiko and time.

    Returns:
        Process exit status
    """
    context = RunContext(
        region=args.region,
        arch=args.arch,
        base=args.base,
        tarball=args.tarball,
        name=args.name,
        description=args.description,
        volume_size=args.volume_size,
        test_ami=args.test_ami,
        public=args.public,
    )

    # Pre-flight: nothing has been created yet, so nothing to clean up
    try:
        lookup_base_image(context.region, context.arch)
        check_tarball(context.tarball)
        credentials = load_credentials()
        footprint = measure_footprint(context.tarball)

        if ec2_client is None:
            session = boto3.Session(
                aws_access_key_id=credentials.access_key,
                aws_secret_access_key=credentials.secret_key,
                region_name=context.region,
            )
            ec2_client = session.client('ec2')

        provisioner = ResourceProvisioner(ec2_client, context, settings, sleep=sleep)
        strategy = select_strategy(provisioner, context)
    except AmiBuilderError as e:
        logger.error(f"Error: {e}")
        return e.exit_code

    cleanup = CleanupCoordinator(provisioner)

    if remote_factory is None:
        def remote_factory(hostname: str, key_path: str) -> RemoteExecutor:
            return RemoteExecutor(hostname, settings.ssh_user, key_path, settings.ssh_timeout)

    tester = None
    if context.test_ami:
        tester = ImageTester(provisioner, cleanup, remote_factory,
                             settings.ssh_attempts, settings.poll_interval)

    orchestrator = WorkflowOrchestrator(
        context, footprint, provisioner, strategy, cleanup, remote_factory,
        tester=tester,
        ssh_attempts=settings.ssh_attempts,
        ssh_interval=settings.poll_interval,
    )

    try:
        result = orchestrator.run()
    except AmiBuilderError as e:
        return e.exit_code
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return ProvisioningCallFailure.exit_code

    banner("AMI BUILD COMPLETED SUCCESSFULLY")
    logger.info(f"AMI ID: {result.image_id}")
    logger.info(f"AMI Name: {result.image_name}")
    logger.info(f"Region: {result.region}")
    if result.cleanup_failures:
        logger.warning(f"{len(result.cleanup_failures)} resource(s) need manual cleanup")
    logger.info("=" * 80)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the AMI builder."""
    args = parse_arguments(argv)
    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    configure_logging(settings.log_file)

    banner("Starting AMI Build Process")
    logger.info(f"Tarball: {args.tarball}")
    logger.info(f"Region: {args.region}")
    logger.info(f"Architecture: {args.arch}")
    logger.info(f"Base: {args.base}")
    logger.info(f"Name: {args.name}")

    return build(args, settings)


if __name__ == '__main__':
    sys.exit(main())
