import os
from typing import Any, Dict

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ...errors import StorageError
from .local import safe_key


class S3StorageProvider:
    provider_type = "s3"

    def __init__(self, config: Dict[str, Any]):
        self.config = config or {}
        self.bucket = str(self.config.get("bucket") or "").strip()
        self.region = str(
            self.config.get("region") or os.environ.get("AWS_DEFAULT_REGION") or os.environ.get("AWS_REGION") or ""
        ).strip()
        self.prefix = str(self.config.get("prefix") or "studio").strip().strip("/")
        self.public_base_url = str(self.config.get("public_base_url") or "").strip().rstrip("/")
        self.kms_key_id = str(self.config.get("kms_key_id") or "").strip()
        self.client = boto3.client("s3", region_name=self.region) if self.region else boto3.client("s3")

    def _key(self, key: str) -> str:
        key = safe_key(key)
        return f"{self.prefix}/{key}" if self.prefix else key

    def url_for(self, key: str) -> str:
        object_key = self._key(key)
        if self.public_base_url:
            return f"{self.public_base_url}/{object_key}"
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{object_key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{object_key}"

    def put(self, key: str, data: bytes, content_type: str) -> str:
        if not self.bucket:
            raise StorageError("s3 bucket is required")
        extra: Dict[str, Any] = {"ContentType": content_type}
        if self.kms_key_id:
            extra["ServerSideEncryption"] = "aws:kms"
            extra["SSEKMSKeyId"] = self.kms_key_id
        try:
            self.client.put_object(Bucket=self.bucket, Key=self._key(key), Body=data, **extra)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"s3 put failed: {exc}") from exc
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(key))
            return response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"s3 get failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(key))
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"s3 delete failed: {exc}") from exc
