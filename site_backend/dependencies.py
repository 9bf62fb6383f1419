"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging

from site_backend.blob_storage import (
    BlobMirror,
    BlobStorageClient,
    InMemoryBlobStorageClient,
    S3BlobStorageClient,
    VercelBlobStorageClient,
)
from site_backend.config import Settings, get_settings
from site_backend.donations import DonationService, StripeGateway
from site_backend.edge_config import EdgeConfigClient, InMemoryEdgeConfigTransport
from site_backend.local_store import LocalFileStore
from site_backend.registrations import RegistrationService
from site_backend.storage import RegistrationStorage, StorageHealth

logger = logging.getLogger(__name__)

_edge_config_client: EdgeConfigClient | None = None
_blob_mirror: BlobMirror | None = None
_registration_storage: RegistrationStorage | None = None
_registration_service: RegistrationService | None = None
_donation_service: DonationService | None = None


def build_edge_config_client(settings: Settings) -> EdgeConfigClient:
    if settings.use_in_memory_backends:
        transport = InMemoryEdgeConfigTransport()
        return EdgeConfigClient(
            config_id="in-memory",
            token="in-memory",
            sdk_factory=lambda connection: transport,
            raw_factory=lambda connection: transport,
        )
    return EdgeConfigClient(
        connection_string=settings.edge_config,
        config_id=settings.edge_config_id,
        token=settings.edge_config_token,
        base_url=settings.edge_config_base_url,
        api_url=settings.vercel_api_url,
        api_token=settings.vercel_api_token,
        retries=settings.http_retries,
        base_delay=settings.retry_base_delay_seconds,
        timeout=settings.http_timeout_seconds,
    )


def build_blob_client(settings: Settings) -> BlobStorageClient | None:
    """
    Pick the blob backend from settings. Missing credentials disable the
    mirror instead of failing startup.
    """
    if not settings.blob_mirror_enabled:
        return None
    if settings.use_in_memory_backends or settings.blob_backend == "memory":
        return InMemoryBlobStorageClient()
    if settings.blob_backend == "s3":
        if not settings.s3_bucket:
            logger.warning("BLOB_BACKEND=s3 but S3_BUCKET is not set, mirror disabled")
            return None
        return S3BlobStorageClient(
            bucket=settings.s3_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.blob_base_url,
        )
    if not settings.blob_read_write_token:
        logger.warning("BLOB_READ_WRITE_TOKEN is not set, blob mirror disabled")
        return None
    return VercelBlobStorageClient(
        settings.blob_read_write_token,
        api_url=settings.blob_api_url,
        public_base_url=settings.blob_base_url,
        access=settings.blob_access_mode,
        retries=settings.http_retries,
        base_delay=settings.retry_base_delay_seconds,
        timeout=settings.http_timeout_seconds,
    )


def get_edge_config_client() -> EdgeConfigClient:
    global _edge_config_client
    if _edge_config_client:
        return _edge_config_client
    _edge_config_client = build_edge_config_client(get_settings())
    _edge_config_client.initialize()
    return _edge_config_client


def get_blob_mirror() -> BlobMirror:
    global _blob_mirror
    if _blob_mirror:
        return _blob_mirror

    settings = get_settings()
    edge_config = get_edge_config_client()
    _blob_mirror = BlobMirror(
        build_blob_client(settings),
        enabled=settings.blob_mirror_enabled,
        filename=settings.blob_filename,
        sync_interval_minutes=settings.blob_sync_interval_minutes,
        edge_config_reader=lambda: edge_config.get(settings.edge_config_key),
    )
    return _blob_mirror


def get_registration_storage() -> RegistrationStorage:
    """
    Return a singleton storage facade so Edge Config health is shared
    across requests.
    """
    global _registration_storage
    if _registration_storage:
        return _registration_storage

    settings = get_settings()
    local = LocalFileStore(settings.registrations_file_path)
    local.ensure_file()
    _registration_storage = RegistrationStorage(
        get_edge_config_client(),
        get_blob_mirror(),
        local,
        health=StorageHealth(
            failure_threshold=settings.edge_config_failure_threshold,
            edge_config_available=get_edge_config_client().ready,
        ),
        key=settings.edge_config_key,
        retry_base_delay=settings.retry_base_delay_seconds,
    )
    return _registration_storage


def get_registration_service() -> RegistrationService:
    global _registration_service
    if _registration_service:
        return _registration_service
    _registration_service = RegistrationService(get_registration_storage())
    return _registration_service


def get_donation_service() -> DonationService:
    global _donation_service
    if _donation_service:
        return _donation_service

    settings = get_settings()
    _donation_service = DonationService(
        StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret),
        get_registration_service(),
        currency=settings.donation_currency,
        organization_name=settings.organization_name,
        vercel_url=settings.vercel_url,
    )
    return _donation_service


def reset_dependencies() -> None:
    """Drop cached singletons so the next request rebuilds them from settings."""
    global _edge_config_client, _blob_mirror, _registration_storage
    global _registration_service, _donation_service
    _edge_config_client = None
    _blob_mirror = None
    _registration_storage = None
    _registration_service = None
    _donation_service = None
