"""
Source tarball inspection.

The tarball carries a raw disk image. We never extract it locally; we only
read its member headers to learn the apparent size of the image.
"""

import importlib.util
import logging
import os
import tarfile
from typing import Optional

from .errors import ToolMissing, UsageError
from .models import TarballFootprint

logger = logging.getLogger(__name__)

# (magic bytes, compression name, decompressor module)
COMPRESSION_SIGNATURES = (
    (b"\x1f\x8b", "gzip", "zlib"),
    (b"BZh", "bzip2", "bz2"),
    (b"\xfd7zXZ\x00", "xz", "lzma"),
)


def detect_compression(path: str) -> Optional[str]:
    """Return the compression name of ``path`` from its magic bytes, or None."""
    with open(path, "rb") as f:
        head = f.read(6)
    for magic, name, _ in COMPRESSION_SIGNATURES:
        if head.startswith(magic):
            return name
    return None


def check_tarball(path: str) -> Optional[str]:
    """
    Pre-flight check of the source tarball.

    Args:
        path: Path to the tarball

    Returns:
        Compression name, or None for an uncompressed tarball

    Raises:
        UsageError: If the file does not exist or cannot be read
        ToolMissing: If the interpreter lacks the decompressor the file needs
    """
    if not os.path.isfile(path):
        raise UsageError(f"Tarball not found: {path}")
    try:
        compression = detect_compression(path)
    except OSError as e:
        raise UsageError(f"Cannot read tarball {path}: {e}")

    for _, name, module in COMPRESSION_SIGNATURES:
        if name == compression and importlib.util.find_spec(module) is None:
            raise ToolMissing(f"{name} support ({module} module) is required to read {path}")

    logger.info(f"Tarball {path} ({compression or 'uncompressed'})")
    return compression


def measure_footprint(path: str) -> TarballFootprint:
    """
    Measure the apparent extracted size of a tarball.

    The size is the sum of all regular members. The largest member is taken
    to be the disk image that gets written to the volume.

    Args:
        path: Path to the tarball

    Returns:
        TarballFootprint for the tarball
    """
    total = 0
    image: Optional[tarfile.TarInfo] = None
    try:
        with tarfile.open(path, "r:*") as archive:
            for member in archive:
                if not member.isfile():
                    continue
                total += member.size
                if image is None or member.size > image.size:
                    image = member
    except (tarfile.TarError, OSError) as e:
        raise UsageError(f"Cannot read tarball {path}: {e}")

    if image is None:
        raise UsageError(f"Tarball {path} contains no image file")

    footprint = TarballFootprint(path=path, member=image.name, size_bytes=total)
    logger.info(f"Image {footprint.member}: {footprint.size_bytes} bytes ({footprint.size_gb} GB)")
    return footprint
