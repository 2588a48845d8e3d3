# -*- coding: utf-8 -*-
"""
Object storage mirror for produced videos

S3/R2/MinIO compatible. Used only when every S3_* setting is present;
the local outputs directory stays the primary copy.
"""

import logging
from io import BytesIO
from typing import Optional

import boto3
from botocore.config import Config

from config import StorageConfig, storage_config

logger = logging.getLogger(__name__)


class ObjectStorage:
    """Thin boto3 wrapper keyed by work item"""

    def __init__(self, config: StorageConfig = None):
        self.config = config or storage_config
        self._client = None

    def is_configured(self) -> bool:
        return not self.config.missing()

    @property
    def client(self):
        """boto3 S3 client, created on first use"""
        if self._client is None:
            missing = self.config.missing()
            if missing:
                raise ValueError(f"Object storage not configured; set {', '.join(missing)}")

            self._client = boto3.client(
                "s3",
                endpoint_url=self.config.endpoint_url,
                aws_access_key_id=self.config.access_key,
                aws_secret_access_key=self.config.secret_key,
                region_name=self.config.region,
                config=Config(
                    signature_version="s3v4",
                    retries={"max_attempts": self.config.max_attempts, "mode": "adaptive"},
                ),
            )
            logger.info(f"[Storage] Connected to bucket {self.config.bucket_name}")

        return self._client

    def artifact_key(self, item_id: str, filename: str) -> str:
        return f"{self.config.key_prefix}/{item_id}/{filename}"

    def upload_artifact(self, item_id: str, filename: str, data: bytes) -> str:
        """Mirror one video; returns its object key"""
        key = self.artifact_key(item_id, filename)
        self.client.upload_fileobj(
            BytesIO(data),
            self.config.bucket_name,
            key,
            ExtraArgs={"ContentType": "video/mp4", "Metadata": {"item_id": item_id}},
        )
        logger.info(f"[Storage] Mirrored {item_id}: {len(data)} bytes → {key}")
        return key

    def download_bytes(self, key: str) -> bytes:
        buffer = BytesIO()
        self.client.download_fileobj(self.config.bucket_name, key, buffer)
        return buffer.getvalue()


_storage: Optional[ObjectStorage] = None


def get_storage() -> ObjectStorage:
    """Process-wide storage instance"""
    global _storage
    if _storage is None:
        _storage = ObjectStorage()
        if not _storage.is_configured():
            logger.debug(f"[Storage] Mirror disabled - missing {', '.join(_storage.config.missing())}")
    return _storage
