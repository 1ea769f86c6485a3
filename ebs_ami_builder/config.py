"""
Run configuration: tunables and credential pre-flight.
"""

from dataclasses import dataclass, fields
import logging
import os
from typing import Dict, Mapping, Optional

from .errors import CredentialMissing

logger = logging.getLogger(__name__)

ENV_PREFIX = "AMI_BUILDER_"

# Account, access key pair, and the X.509 certificate/key pair of the
# compute API account.
REQUIRED_CREDENTIALS = (
    "AWS_ACCOUNT_ID",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "EC2_CERT",
    "EC2_PRIVATE_KEY",
)


@dataclass
class Settings:
    """Tunables for the build. Every field can be overridden from the environment."""
    instance_type: str = "m1.small"
    ssh_user: str = "root"
    security_group: str = "ebs-ami-builder"
    ssh_cidr: str = "0.0.0.0/0"
    key_prefix: str = "ebs-ami-builder"
    secondary_device: str = "/dev/sdf"
    poll_interval: float = 3.0
    instance_attempts: int = 100
    volume_attempts: int = 100
    snapshot_attempts: int = 100
    image_attempts: int = 400
    teardown_attempts: int = 100
    ssh_attempts: int = 50
    ssh_timeout: float = 10.0
    log_file: str = "build_ami.log"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings, applying ``AMI_BUILDER_<FIELD>`` overrides.

        Args:
            environ: Environment mapping (defaults to os.environ)

        Returns:
            Settings instance
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            try:
                overrides[f.name] = type(f.default)(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}")
            logger.debug(f"Setting override {f.name}={overrides[f.name]!r}")
        return cls(**overrides)


@dataclass
class Credentials:
    account_id: str
    access_key: str
    secret_key: str
    cert_file: str
    private_key_file: str


def load_credentials(environ: Optional[Mapping[str, str]] = None) -> Credentials:
    """
    Read the compute API credentials from the environment.

    Raises:
        CredentialMissing: If any required variable is unset or empty
    """
    environ = os.environ if environ is None else environ
    missing = [name for name in REQUIRED_CREDENTIALS if not environ.get(name)]
    if missing:
        raise CredentialMissing(missing)

    values: Dict[str, str] = {name: environ[name] for name in REQUIRED_CREDENTIALS}
    return Credentials(
        account_id=values["AWS_ACCOUNT_ID"],
        access_key=values["AWS_ACCESS_KEY_ID"],
        secret_key=values["AWS_SECRET_ACCESS_KEY"],
        cert_file=values["EC2_CERT"],
        private_key_file=values["EC2_PRIVATE_KEY"],
    )
