"""
EC2 provider layer: thin wrappers over the boto3 EC2 client.

Each wrapper owns one resource family and turns SDK errors and
incomplete responses into the amiize failure taxonomy.
"""

from .compute import ComputeProvisioner
from .ec2 import EC2Session
from .images import ImageRegistrar
from .storage import StorageLifecycle

__all__ = ["ComputeProvisioner", "EC2Session", "ImageRegistrar", "StorageLifecycle"]
