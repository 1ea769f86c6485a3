#!/usr/bin/env python3
"""
AMI Build Script

Turn a raw disk image tarball into an EBS-backed AMI. See
``ebs_ami_builder.cli`` for the options.
"""

import sys

from ebs_ami_builder.cli import main

if __name__ == '__main__':
    sys.exit(main())
