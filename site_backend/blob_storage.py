"""
Blob storage clients and the registrations mirror built on top of them.

Vercel Blob appends a random suffix to uploaded pathnames, so the mirror
finds its object by filename prefix and tracks the discovered pathname.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from site_backend.edge_config import EdgeConfigError
from site_backend.retry import (
    DEFAULT_BASE_DELAY,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    request_with_retry,
)

logger = logging.getLogger(__name__)

VERCEL_BLOB_API_VERSION = "7"


class BlobStorageError(Exception):
    """Raised when a blob storage call fails."""


@dataclass(frozen=True)
class BlobObject:
    pathname: str
    url: str
    uploaded_at: datetime
    size: int = 0

    def as_dict(self) -> dict:
        return {
            "pathname": self.pathname,
            "url": self.url,
            "uploadedAt": self.uploaded_at.isoformat(),
            "size": self.size,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def with_random_suffix(pathname: str) -> str:
    stem, ext = os.path.splitext(pathname)
    return f"{stem}-{uuid.uuid4().hex[:24]}{ext}"


class BlobStorageClient(Protocol):
    """Defines the operations the mirror needs from object storage."""

    def put(
        self,
        pathname: str,
        body: bytes,
        *,
        content_type: str = "application/json",
        add_random_suffix: bool = True,
    ) -> BlobObject:
        ...

    def list(self, prefix: str = "") -> list[BlobObject]:
        ...

    def get_bytes(self, pathname: str) -> bytes:
        ...

    def delete(self, pathname: str) -> None:
        ...

    def url_for(self, pathname: str) -> str:
        ...


@dataclass
class InMemoryBlobStorageClient:
    """Test double for blob storage interactions."""

    base_url: str = "https://example.test/blob"
    stored_objects: dict = None
    clock: Callable[[], datetime] = _utcnow
    fail: bool = False
    put_count: int = 0

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def _check(self) -> None:
        if self.fail:
            raise BlobStorageError("simulated blob storage failure")

    def put(
        self,
        pathname: str,
        body: bytes,
        *,
        content_type: str = "application/json",
        add_random_suffix: bool = True,
    ) -> BlobObject:
        self._check()
        if add_random_suffix:
            pathname = with_random_suffix(pathname)
        blob = BlobObject(
            pathname=pathname,
            url=self.url_for(pathname),
            uploaded_at=self.clock(),
            size=len(body),
        )
        self.stored_objects[pathname] = (bytes(body), blob)
        self.put_count += 1
        return blob

    def list(self, prefix: str = "") -> list[BlobObject]:
        self._check()
        return [
            blob
            for path, (_, blob) in self.stored_objects.items()
            if path.startswith(prefix)
        ]

    def get_bytes(self, pathname: str) -> bytes:
        self._check()
        stored = self.stored_objects.get(pathname)
        if stored is None:
            raise FileNotFoundError(pathname)
        return stored[0]

    def delete(self, pathname: str) -> None:
        self._check()
        self.stored_objects.pop(pathname, None)

    def url_for(self, pathname: str) -> str:
        return f"{self.base_url}/{pathname}"


class VercelBlobStorageClient:
    """Vercel Blob REST API client."""

    def __init__(
        self,
        token: str,
        *,
        api_url: str = "https://blob.vercel-storage.com",
        public_base_url: Optional[str] = None,
        access: str = "public",
        session: Optional[requests.Session] = None,
        retries: int = DEFAULT_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not token:
            raise ValueError("BLOB_READ_WRITE_TOKEN is required for Vercel Blob")
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.access = access
        self.session = session or requests.Session()
        self.retries = retries
        self.base_delay = base_delay
        self.timeout = timeout

    def _headers(self, **extra: str) -> dict:
        headers = {
            "authorization": f"Bearer {self.token}",
            "x-api-version": VERCEL_BLOB_API_VERSION,
        }
        headers.update(extra)
        return headers

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = request_with_retry(
                method,
                url,
                session=self.session,
                retries=self.retries,
                base_delay=self.base_delay,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise BlobStorageError(f"{method} {url} failed: {exc}") from exc
        if not response.ok:
            raise BlobStorageError(
                f"{method} {url} returned {response.status_code}: {response.text[:200]}"
            )
        return response

    def put(
        self,
        pathname: str,
        body: bytes,
        *,
        content_type: str = "application/json",
        add_random_suffix: bool = True,
    ) -> BlobObject:
        response = self._request(
            "PUT",
            f"{self.api_url}/{pathname}",
            data=body,
            headers=self._headers(
                **{
                    "x-content-type": content_type,
                    "x-add-random-suffix": "1" if add_random_suffix else "0",
                    "x-allow-overwrite": "0" if add_random_suffix else "1",
                    "x-vercel-blob-access": self.access,
                }
            ),
        )
        try:
            payload = response.json()
            return BlobObject(
                pathname=payload["pathname"],
                url=payload["url"],
                uploaded_at=_utcnow(),
                size=len(body),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise BlobStorageError(f"Unexpected response from PUT {pathname}: {exc!r}") from exc

    def list(self, prefix: str = "") -> list[BlobObject]:
        blobs: list[BlobObject] = []
        cursor: Optional[str] = None
        while True:
            params = {"limit": 1000}
            if prefix:
                params["prefix"] = prefix
            if cursor:
                params["cursor"] = cursor
            response = self._request(
                "GET", self.api_url, params=params, headers=self._headers()
            )
            try:
                payload = response.json()
                for item in payload.get("blobs", []):
                    blobs.append(
                        BlobObject(
                            pathname=item["pathname"],
                            url=item["url"],
                            uploaded_at=_parse_timestamp(item.get("uploadedAt")),
                            size=int(item.get("size") or 0),
                        )
                    )
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                raise BlobStorageError(f"Unexpected blob listing response: {exc!r}") from exc
            cursor = payload.get("cursor")
            if not payload.get("hasMore") or not cursor:
                return blobs

    def _find(self, pathname: str) -> BlobObject:
        for blob in self.list(prefix=pathname):
            if blob.pathname == pathname:
                return blob
        raise FileNotFoundError(pathname)

    def get_bytes(self, pathname: str) -> bytes:
        blob = self._find(pathname)
        return self._request("GET", blob.url).content

    def delete(self, pathname: str) -> None:
        blob = self._find(pathname)
        self._request(
            "POST",
            f"{self.api_url}/delete",
            json={"urls": [blob.url]},
            headers=self._headers(**{"content-type": "application/json"}),
        )

    def url_for(self, pathname: str) -> str:
        base = self.public_base_url or self.api_url
        return f"{base}/{pathname}"


@dataclass
class S3BlobStorageClient:
    """
    S3-compatible bucket used as the registrations mirror.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None
    _client: Any = field(default=None, init=False, repr=False)

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def put(
        self,
        pathname: str,
        body: bytes,
        *,
        content_type: str = "application/json",
        add_random_suffix: bool = True,
    ) -> BlobObject:
        if add_random_suffix:
            pathname = with_random_suffix(pathname)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=pathname,
                Body=body,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise BlobStorageError(f"put_object {pathname} failed: {exc}") from exc
        return BlobObject(
            pathname=pathname,
            url=self.url_for(pathname),
            uploaded_at=_utcnow(),
            size=len(body),
        )

    def list(self, prefix: str = "") -> list[BlobObject]:
        blobs: list[BlobObject] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    blobs.append(
                        BlobObject(
                            pathname=item["Key"],
                            url=self.url_for(item["Key"]),
                            uploaded_at=_parse_timestamp(item.get("LastModified")),
                            size=int(item.get("Size") or 0),
                        )
                    )
        except (BotoCoreError, ClientError) as exc:
            raise BlobStorageError(f"list_objects_v2 {prefix!r} failed: {exc}") from exc
        return blobs

    def get_bytes(self, pathname: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=pathname)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(pathname) from exc
            raise BlobStorageError(f"get_object {pathname} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise BlobStorageError(f"get_object {pathname} failed: {exc}") from exc
        return response["Body"].read()

    def delete(self, pathname: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=pathname)
        except (BotoCoreError, ClientError) as exc:
            raise BlobStorageError(f"delete_object {pathname} failed: {exc}") from exc

    def url_for(self, pathname: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{pathname}"
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": pathname},
            ExpiresIn=3600,
        )


@dataclass
class BlobSaveResult:
    success: bool
    url: Optional[str] = None
    pathname: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BlobReadResult:
    success: bool
    data: list = field(default_factory=list)
    message: str = ""


class BlobMirror:
    """
    Mirrors the registrations array to blob storage as one JSON object.

    Syncs are time-gated by `sync_interval_minutes` and never run
    concurrently; an overlapping sync is skipped rather than queued.
    """

    def __init__(
        self,
        client: Optional[BlobStorageClient],
        *,
        enabled: bool = True,
        filename: str = "passover-registrations.json",
        sync_interval_minutes: float = 60,
        edge_config_reader: Optional[Callable[[], Any]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.enabled = bool(enabled and client is not None)
        self.filename = filename
        self.sync_interval_minutes = sync_interval_minutes
        self.edge_config_reader = edge_config_reader
        self.clock = clock
        self.current_pathname: Optional[str] = None
        self.last_sync_time: Optional[datetime] = None
        self._sync_lock = threading.Lock()

    @property
    def prefix(self) -> str:
        return os.path.splitext(self.filename)[0]

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_lock.locked()

    def _matching_blobs(self) -> list[BlobObject]:
        return [
            blob
            for blob in self.client.list(prefix=self.prefix)
            if blob.pathname.startswith(self.prefix) and blob.pathname.endswith(".json")
        ]

    def save_registrations_to_blob(self, registrations: list) -> BlobSaveResult:
        if not self.enabled:
            logger.info("Blob mirroring is disabled, skipping save to blob storage")
            return BlobSaveResult(success=False, error="Blob mirroring is disabled")

        logger.info("Saving %d registrations to Blob storage", len(registrations))
        body = json.dumps(registrations, indent=2, default=str).encode("utf-8")

        if self.current_pathname:
            try:
                blob = self.client.put(
                    self.current_pathname, body, add_random_suffix=False
                )
                self.last_sync_time = self.clock()
                logger.info("Updated existing blob %s", blob.pathname)
                return BlobSaveResult(success=True, url=blob.url, pathname=blob.pathname)
            except BlobStorageError as exc:
                logger.warning(
                    "Failed to update blob %s, creating a new one: %s",
                    self.current_pathname,
                    exc,
                )

        try:
            blob = self.client.put(self.filename, body, add_random_suffix=True)
        except BlobStorageError as exc:
            logger.error("Error saving registrations to Blob storage: %s", exc)
            return BlobSaveResult(success=False, error=str(exc))

        self.current_pathname = blob.pathname
        self.last_sync_time = self.clock()
        logger.info("Saved registrations to Blob storage at %s", blob.pathname)
        return BlobSaveResult(success=True, url=blob.url, pathname=blob.pathname)

    def get_registrations_from_blob(self) -> BlobReadResult:
        if not self.enabled:
            return BlobReadResult(success=False, message="Blob mirroring is disabled")

        try:
            candidates = self._matching_blobs()
            if not candidates:
                return BlobReadResult(
                    success=False, message="No registrations blob found"
                )
            latest = max(candidates, key=lambda blob: blob.uploaded_at)
            logger.info(
                "Using most recent blob %s (%d bytes, uploaded %s)",
                latest.pathname,
                latest.size,
                latest.uploaded_at.isoformat(),
            )
            raw = self.client.get_bytes(latest.pathname)
        except (BlobStorageError, FileNotFoundError) as exc:
            logger.error("Error fetching registrations from Blob storage: %s", exc)
            return BlobReadResult(success=False, message=f"Error fetching blob: {exc}")

        text = raw.decode("utf-8", errors="replace")
        if not text.strip():
            return BlobReadResult(success=False, message="Blob content is empty")
        try:
            data = json.loads(text)
        except ValueError as exc:
            return BlobReadResult(success=False, message=f"Error parsing JSON: {exc}")
        if not isinstance(data, list):
            return BlobReadResult(success=False, message="Blob content is not an array")

        self.current_pathname = latest.pathname
        return BlobReadResult(
            success=True,
            data=data,
            message=f"Loaded {len(data)} registrations from {latest.pathname}",
        )

    def sync_registrations_to_blob(
        self, registrations: Optional[list] = None, force: bool = False
    ) -> bool:
        """
        Write the registrations to blob storage unless a sync ran recently.

        When `registrations` is None they are read through the Edge Config
        reader. Returns True only when a write happened and succeeded.
        """
        if not self.enabled:
            return False
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Blob sync already in progress, skipping")
            return False
        try:
            if not force and self.last_sync_time is not None:
                elapsed = (self.clock() - self.last_sync_time).total_seconds() / 60
                if elapsed < self.sync_interval_minutes:
                    logger.debug(
                        "Last blob sync %.1f minutes ago, interval is %s minutes",
                        elapsed,
                        self.sync_interval_minutes,
                    )
                    return False

            if registrations is None:
                if self.edge_config_reader is None:
                    logger.warning("No registrations given and no Edge Config reader")
                    return False
                try:
                    registrations = self.edge_config_reader() or []
                except EdgeConfigError as exc:
                    logger.error("Error fetching from Edge Config for sync: %s", exc)
                    return False

            return self.save_registrations_to_blob(registrations).success
        finally:
            self._sync_lock.release()

    def delete_registrations_blob(self) -> bool:
        if not self.enabled:
            return False
        try:
            if self.current_pathname:
                self.client.delete(self.current_pathname)
            else:
                for blob in self._matching_blobs():
                    logger.info("Deleting blob %s", blob.pathname)
                    self.client.delete(blob.pathname)
        except (BlobStorageError, FileNotFoundError) as exc:
            logger.error("Error deleting registrations blob: %s", exc)
            return False
        self.current_pathname = None
        return True

    def registration_blob_url(self) -> Optional[str]:
        if not self.enabled:
            return None
        return self.client.url_for(self.current_pathname or self.filename)

    def list_blobs(self) -> tuple[bool, list[BlobObject], str]:
        if not self.enabled:
            return False, [], "Blob mirroring is disabled"
        try:
            blobs = self.client.list()
        except BlobStorageError as exc:
            return False, [], f"Error listing blobs: {exc}"
        return True, blobs, f"Found {len(blobs)} blobs"
