# feedsync/clients/storage.py
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from ..config import R2, HTTP_TIMEOUT

CACHE_CONTROL = "public, max-age=31536000, immutable"


class ObjectStorage:
    """S3-compatible bucket (Cloudflare R2 in production) holding uploaded images."""

    def __init__(self, client=None, bucket: str | None = None, public_url: str | None = None):
        self.bucket = bucket or R2["bucket"]
        self.public_url = (public_url if public_url is not None else R2["public_url"]).rstrip("/")
        if client is None:
            if not R2["endpoint_url"]:
                raise RuntimeError("R2_ENDPOINT is required")
            if not (R2["access_key_id"] and R2["secret_access_key"]):
                raise RuntimeError("R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY are required")
            client = boto3.session.Session().client(
                "s3",
                endpoint_url=R2["endpoint_url"],
                aws_access_key_id=R2["access_key_id"],
                aws_secret_access_key=R2["secret_access_key"],
                region_name=R2["region"],
                config=Config(
                    signature_version="s3v4",
                    connect_timeout=HTTP_TIMEOUT,
                    read_timeout=HTTP_TIMEOUT,
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )
        self.client = client

    def url_for(self, key: str) -> str:
        return f"{self.public_url}/{key}" if self.public_url else key

    def put(self, key: str, data: bytes, content_type: Optional[str], bucket: str | None = None) -> str:
        kwargs = {"Bucket": bucket or self.bucket, "Key": key, "Body": data, "CacheControl": CACHE_CONTROL}
        if content_type:
            kwargs["ContentType"] = content_type
        self.client.put_object(**kwargs)
        return self.url_for(key)

    def get(self, key: str, bucket: str | None = None) -> tuple[bytes, Optional[str]]:
        obj = self.client.get_object(Bucket=bucket or self.bucket, Key=key)
        body = obj.get("Body")
        return (body.read() if body else b""), obj.get("ContentType")

    def exists(self, key: str, bucket: str | None = None) -> bool:
        try:
            self.client.head_object(Bucket=bucket or self.bucket, Key=key)
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def delete(self, key: str, bucket: str | None = None):
        self.client.delete_object(Bucket=bucket or self.bucket, Key=key)
