"""
Static per-region, per-architecture lookup tables.

BASE_IMAGES are the EBS-backed images used to boot the build instance.
PVGRUB_KERNELS are the paravirtual boot-loader (PV-GRUB, hd0) kernel ids
that make a snapshot-registered image bootable.
"""

from typing import Dict

from .errors import UnknownRegionOrArchitecture

ARCHITECTURES = ("i386", "x86_64")

BASE_IMAGES: Dict[str, Dict[str, str]] = {
    "us-east-1": {"i386": "ami-8c1fece5", "x86_64": "ami-8e1fece7"},
    "us-west-1": {"i386": "ami-ce6e6f8b", "x86_64": "ami-cc6e6f89"},
    "us-west-2": {"i386": "ami-b8f69f88", "x86_64": "ami-bcf69f8c"},
    "eu-west-1": {"i386": "ami-d5f2b7a1", "x86_64": "ami-d7f2b7a3"},
    "ap-southeast-1": {"i386": "ami-a6a7e7f4", "x86_64": "ami-a4a7e7f6"},
    "ap-northeast-1": {"i386": "ami-2d1fcc2c", "x86_64": "ami-2b1fcc2a"},
    "sa-east-1": {"i386": "ami-e4ef05f9", "x86_64": "ami-e6ef05fb"},
}

PVGRUB_KERNELS: Dict[str, Dict[str, str]] = {
    "us-east-1": {"i386": "aki-b6aa75df", "x86_64": "aki-88aa75e1"},
    "us-west-1": {"i386": "aki-f57e26b0", "x86_64": "aki-f77e26b2"},
    "us-west-2": {"i386": "aki-fa37baca", "x86_64": "aki-fc37bacc"},
    "eu-west-1": {"i386": "aki-75665e01", "x86_64": "aki-71665e05"},
    "ap-southeast-1": {"i386": "aki-f81354aa", "x86_64": "aki-fe1354ac"},
    "ap-northeast-1": {"i386": "aki-136bf512", "x86_64": "aki-176bf516"},
    "sa-east-1": {"i386": "aki-bc3ce3a1", "x86_64": "aki-cc3ce3d1"},
}


def _lookup(table: Dict[str, Dict[str, str]], region: str, arch: str, what: str) -> str:
    try:
        return table[region][arch]
    except KeyError:
        raise UnknownRegionOrArchitecture(region, arch, what)


def lookup_base_image(region: str, arch: str) -> str:
    return _lookup(BASE_IMAGES, region, arch, "base image")


def lookup_kernel(region: str, arch: str) -> str:
    return _lookup(PVGRUB_KERNELS, region, arch, "boot-loader kernel")
