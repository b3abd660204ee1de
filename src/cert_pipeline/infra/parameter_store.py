"""Parameter Store client implementation."""

import os
import boto3
from botocore.exceptions import BotoCoreError, ClientError


class ParameterStoreClient:
    """Reads pipeline parameters from /certpipeline/<env>/<name>."""

    def __init__(self, region: str = "us-east-1", env: str = "dev"):
        """Initialize SSM client."""
        self.ssm = boto3.client(
            "ssm",
            region_name=region,
            endpoint_url=os.getenv("AWS_ENDPOINT_URL"),
        )
        self.env = env
        self._cache: dict[str, str] = {}

    def get_parameter(self, name: str, decrypt: bool = False) -> str:
        """Get a parameter value (with caching)."""
        if name in self._cache:
            return self._cache[name]

        full_name = f"/certpipeline/{self.env}/{name}"

        try:
            response = self.ssm.get_parameter(Name=full_name, WithDecryption=decrypt)
        except (BotoCoreError, ClientError) as e:
            raise RuntimeError(f"Failed to get parameter {full_name}: {e}") from e

        value = response["Parameter"]["Value"]
        self._cache[name] = value
        return value
