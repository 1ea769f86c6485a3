"""
Build EBS-backed AMIs from raw disk image tarballs.
"""

__version__ = "0.1.0"
