"""Certificate artifact storage."""

import os
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .xray import xray_capture
from ..domain.errors import GenerationError
from ..domain.interfaces import ArtifactStorage


class S3ArtifactStorage(ArtifactStorage):
    """Stores rendered certificates in an S3 bucket."""

    def __init__(self, bucket: str, region: str = "us-east-1", prefix: str = "certificates/", endpoint_url: Optional[str] = None):
        """Initialize S3 client."""
        self.bucket = bucket
        self.prefix = prefix
        self.s3 = boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url or os.getenv("AWS_ENDPOINT_URL"),
        )

    @xray_capture("s3_save_artifact")
    def save(self, key: str, content: bytes, content_type: str) -> str:
        """Upload an artifact and return its s3:// URL."""
        object_key = f"{self.prefix}{key}"
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=object_key,
                Body=content,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise GenerationError(f"Failed to store certificate artifact: {e}", code="storage_failed") from e
        return f"s3://{self.bucket}/{object_key}"


class LocalArtifactStorage(ArtifactStorage):
    """Stores rendered certificates under a local directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def save(self, key: str, content: bytes, content_type: str) -> str:
        root = self.directory.resolve()
        path = (root / key).resolve()
        if not path.is_relative_to(root):
            raise GenerationError(
                f"Artifact key {key!r} escapes {root}",
                code="invalid_artifact_key",
                retryable=False,
            )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as e:
            raise GenerationError(f"Failed to store certificate artifact: {e}", code="storage_failed") from e
        return path.resolve().as_uri()
