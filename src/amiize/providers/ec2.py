"""
Shared boto3 EC2 session for the provider wrappers.

Expects AWS credentials via environment variables, ~/.aws/credentials,
or an IAM instance profile. The region is always explicit.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Type, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import AmiizeError, ProviderQueryFailure

logger = logging.getLogger(__name__)

MANAGED_BY = "amiize"


def dig(
    data: Any,
    *path: Union[str, int],
    operation: str = "provider",
    error: Type[AmiizeError] = ProviderQueryFailure,
) -> Any:
    """Walk a response dict by keys and list indexes.

    Args:
        data: Parsed provider response.
        *path: Keys (str) and list indexes (int) to follow.
        operation: Operation name for the error message.
        error: Exception raised if any step is missing or empty.

    Returns:
        The value at the end of the path.
    """
    current = data
    for step in path:
        try:
            current = current[step]
        except (KeyError, IndexError, TypeError):
            current = None
        if current is None or current == "":
            where = ".".join(str(p) for p in path)
            raise error(f"Couldn't find {where} in {operation} output")
    return current


class EC2Session:
    """Lazily created boto3 EC2 client bound to one region.

    Args:
        region: AWS region (e.g. 'us-west-2').
        client: Pre-built client, mainly for tests.
    """

    def __init__(self, region: str, client: Optional[Any] = None) -> None:
        self.region = region
        self._client = client

    @property
    def client(self) -> Any:
        """The boto3 EC2 client, created on first use."""
        if self._client is None:
            logger.debug("Creating EC2 client for %s", self.region)
            self._client = boto3.client("ec2", region_name=self.region)
        return self._client

    def call(
        self,
        operation: str,
        error: Type[AmiizeError] = ProviderQueryFailure,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """Invoke an EC2 API operation.

        Args:
            operation: boto3 method name (e.g. 'run_instances').
            error: Exception class raised on SDK failure.
            **kwargs: Operation parameters.

        Returns:
            Parsed response dict.
        """
        logger.debug("EC2 %s %s", operation, kwargs)
        try:
            return getattr(self.client, operation)(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise error(f"EC2 {operation} failed: {exc}") from exc

    @staticmethod
    def tags(resource_type: str, name: str) -> Dict[str, Any]:
        """Build a TagSpecification marking a resource as ours."""
        return {
            "ResourceType": resource_type,
            "Tags": [
                {"Key": "Name", "Value": name[:255]},
                {"Key": "ManagedBy", "Value": MANAGED_BY},
            ],
        }
