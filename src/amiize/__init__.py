"""
amiize: register a raw disk image as a bootable EC2 machine image.

Launches a short-lived worker, writes the image onto its spare EBS
volume, snapshots the volume and registers the snapshot as an AMI.
Every ephemeral resource is tracked so failed or interrupted runs
clean up after themselves.
"""

import os

__version__ = "0.1.0"

AMIIZE_HOME = os.environ.get("AMIIZE_HOME", "~/.amiize")
