from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import tempfile
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
import httpx

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000"
_SPOOL_MAX_BYTES = 16 * 1024 * 1024
_CHUNK_BYTES = 1024 * 1024


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class R2Config:
    account_id: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    bucket: str = "karavideo"
    endpoint_url: str = ""
    public_base_url: str = ""
    download_timeout_s: float = 120.0

    @property
    def enabled(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key and self.resolved_endpoint)

    @property
    def resolved_endpoint(self) -> str:
        if self.endpoint_url:
            return self.endpoint_url
        if self.account_id:
            return f"https://{self.account_id}.r2.cloudflarestorage.com"
        return ""


def load_r2_config() -> R2Config:
    return R2Config(
        account_id=os.getenv("R2_ACCOUNT_ID", "").strip(),
        access_key_id=os.getenv("R2_ACCESS_KEY_ID", "").strip(),
        secret_access_key=os.getenv("R2_SECRET_ACCESS_KEY", "").strip(),
        bucket=os.getenv("R2_BUCKET_NAME", "karavideo").strip(),
        endpoint_url=os.getenv("R2_ENDPOINT_URL", "").strip().rstrip("/"),
        public_base_url=os.getenv("R2_PUBLIC_BASE_URL", "").strip().rstrip("/"),
        download_timeout_s=float(os.getenv("R2_DOWNLOAD_TIMEOUT_S", "120")),
    )


class R2ObjectStorage:
    """Copy provider-hosted media into the owned bucket.

    Downloads are streamed into a spooled temporary file so large videos do
    not have to fit in memory before the multipart upload starts.
    """

    def __init__(
        self,
        config: R2Config,
        *,
        s3_client: Any = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        if s3_client is None and not config.enabled:
            raise RuntimeError("R2 credentials are not configured")
        if not config.public_base_url:
            raise RuntimeError("R2_PUBLIC_BASE_URL is not configured")
        self.config = config
        self._s3 = s3_client or boto3.client(
            "s3",
            endpoint_url=config.resolved_endpoint,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name="auto",
            config=BotoConfig(signature_version="s3v4", retries={"max_attempts": 3}),
        )
        self._http = http_client or httpx.Client(
            timeout=config.download_timeout_s,
            follow_redirects=True,
        )

    def public_url(self, key: str) -> str:
        return f"{self.config.public_base_url}/{key}"

    def is_owned(self, url: str) -> bool:
        return url.startswith(f"{self.config.public_base_url}/")

    def put_from_url(self, source_url: str, key: str, content_type: str) -> str:
        if self.is_owned(source_url):
            logger.info("%s already in owned storage; skipping upload", source_url)
            return source_url

        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES) as buffer:
            try:
                with self._http.stream("GET", source_url) as response:
                    if response.status_code >= 300:
                        raise StorageError(f"download of {source_url} failed: HTTP {response.status_code}")
                    for chunk in response.iter_bytes(_CHUNK_BYTES):
                        buffer.write(chunk)
            except httpx.HTTPError as exc:
                raise StorageError(f"download of {source_url} failed: {exc}") from exc

            size = buffer.tell()
            if size == 0:
                raise StorageError(f"download of {source_url} returned an empty body")
            buffer.seek(0)
            try:
                self._s3.upload_fileobj(
                    buffer,
                    self.config.bucket,
                    key,
                    ExtraArgs={"ContentType": content_type, "CacheControl": CACHE_CONTROL},
                )
            except (BotoCoreError, ClientError) as exc:
                raise StorageError(f"upload of {key} failed: {exc}") from exc

        logger.info("uploaded %s (%s bytes) to %s", source_url, size, key)
        return self.public_url(key)
