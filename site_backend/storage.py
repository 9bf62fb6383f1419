"""
Registration storage facade over Edge Config, Blob storage and a local file.

Reads poll the tiers in priority order until one answers. Writes always land
in the local file first; the write counts as successful if any tier took it.
Edge Config health is tracked in an explicit `StorageHealth` object that is
injected into the facade.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from site_backend.blob_storage import BlobMirror
from site_backend.edge_config import (
    EdgeConfigClient,
    EdgeConfigError,
    EdgeConfigSizeLimitError,
    EdgeConfigUnavailableError,
)
from site_backend.local_store import LocalFileStore
from site_backend.retry import DEFAULT_BASE_DELAY, backoff_delay
from site_backend.schemas import normalize_registration

logger = logging.getLogger(__name__)

DEFAULT_KEY = "passover_registrations"


class StorageTier(str, enum.Enum):
    EDGE_CONFIG = "edgeConfig"
    BLOB = "blob"
    LOCAL = "local"


@dataclass
class StorageHealth:
    """Consecutive Edge Config failures and the derived availability flags."""

    failure_threshold: int = 3
    failure_count: int = 0
    edge_config_available: bool = False
    size_limited: bool = False

    @property
    def degraded(self) -> bool:
        return self.failure_count >= self.failure_threshold

    def record_success(self) -> None:
        self.failure_count = 0
        self.edge_config_available = True

    def record_failure(self) -> int:
        self.failure_count += 1
        if self.degraded:
            self.edge_config_available = False
        return self.failure_count

    def mark_unavailable(self, size_limited: bool = False) -> None:
        logger.info("Marking Edge Config as unavailable")
        self.edge_config_available = False
        self.failure_count = max(self.failure_count, self.failure_threshold)
        self.size_limited = self.size_limited or size_limited

    def set_failure_count(self, count: int) -> None:
        logger.info("Setting Edge Config failure count to %d", count)
        self.failure_count = max(0, count)
        if self.degraded:
            self.edge_config_available = False
        elif self.failure_count == 0:
            self.size_limited = False

    def reset(self) -> None:
        self.failure_count = 0
        self.size_limited = False


@dataclass
class StorageResult:
    success: bool
    message: str
    data: list = field(default_factory=list)
    source: Optional[StorageTier] = None


class RegistrationStorage:
    def __init__(
        self,
        edge_config: EdgeConfigClient,
        blob: BlobMirror,
        local: LocalFileStore,
        *,
        health: Optional[StorageHealth] = None,
        key: str = DEFAULT_KEY,
        retry_base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.edge_config = edge_config
        self.blob = blob
        self.local = local
        self.health = health or StorageHealth()
        self.key = key
        self.retry_base_delay = retry_base_delay
        self.sleep = sleep

    # -- tier ordering -----------------------------------------------------

    def read_order(self) -> list[StorageTier]:
        tiers: list[StorageTier] = []
        if not self.health.degraded:
            tiers.append(StorageTier.EDGE_CONFIG)
        if self.blob.enabled:
            tiers.append(StorageTier.BLOB)
        tiers.append(StorageTier.LOCAL)
        return tiers

    def primary_tier(self) -> StorageTier:
        if self.health.degraded and self.blob.enabled:
            return StorageTier.BLOB
        if self.health.edge_config_available:
            return StorageTier.EDGE_CONFIG
        return StorageTier.LOCAL

    # -- Edge Config -------------------------------------------------------

    def _ensure_edge_config(self) -> None:
        if self.edge_config.ready:
            return
        if not self.edge_config.initialize():
            raise EdgeConfigUnavailableError("Edge Config client could not be initialized")

    def _read_edge_config(self) -> list:
        self._ensure_edge_config()
        value = self.edge_config.get(self.key)
        self.health.record_success()
        if value is None:
            logger.info("No %s item in Edge Config, returning empty array", self.key)
            return []
        data = [
            normalize_registration(record)
            for record in (value if isinstance(value, list) else [])
            if isinstance(record, dict)
        ]
        self.local.write(data)
        self.blob.sync_registrations_to_blob(data)
        return data

    def _recheck_edge_config(self, registrations: list) -> bool:
        """Re-init and test-read Edge Config while degraded, then push the
        current array to it. Degradation ends only once the write lands."""
        if self.health.size_limited:
            return False
        try:
            if not self.edge_config.reinitialize():
                raise EdgeConfigUnavailableError("client initialization failed")
            self.edge_config.get(self.key)
        except EdgeConfigError as exc:
            count = self.health.record_failure()
            logger.warning("Edge Config still unavailable (%d failures): %s", count, exc)
            return False
        try:
            self.edge_config.set(self.key, registrations)
        except EdgeConfigSizeLimitError as exc:
            logger.warning("Edge Config size limit reached while catching up: %s", exc)
            self.health.mark_unavailable(size_limited=True)
            return False
        except EdgeConfigError as exc:
            logger.warning(
                "Edge Config readable but catch-up write failed (%d failures): %s",
                self.health.failure_count,
                exc,
            )
            return False
        self.health.record_success()
        logger.info("Edge Config reachable again, %d registrations written", len(registrations))
        return True

    # -- public API ----------------------------------------------------------

    def get_registrations(self) -> StorageResult:
        tiers = self.read_order()
        for position, tier in enumerate(tiers):
            if tier is StorageTier.EDGE_CONFIG:
                try:
                    data = self._read_edge_config()
                except EdgeConfigError as exc:
                    count = self.health.record_failure()
                    logger.warning(
                        "Edge Config read failed (%d consecutive failures): %s",
                        count,
                        exc,
                    )
                    continue
                return StorageResult(
                    True, "Using Edge Config", data, StorageTier.EDGE_CONFIG
                )

            if tier is StorageTier.BLOB:
                result = self.blob.get_registrations_from_blob()
                # As a fallback, an empty blob is not trusted over the local file.
                if result.success and (result.data or position == 0):
                    message = (
                        "Using Blob storage"
                        if position == 0
                        else "Using Blob storage as fallback"
                    )
                    data = [
                        normalize_registration(r)
                        for r in result.data
                        if isinstance(r, dict)
                    ]
                    return StorageResult(True, message, data, StorageTier.BLOB)
                logger.info("Blob storage retrieval unsuccessful: %s", result.message)
                continue

        data = [normalize_registration(r) for r in self.local.read() if isinstance(r, dict)]
        return StorageResult(True, "Using local storage fallback", data, StorageTier.LOCAL)

    def save_registrations(self, registrations: list) -> StorageResult:
        logger.info("Saving %d registrations", len(registrations))
        local_ok = self.local.write(registrations)

        if self.health.degraded and self.blob.enabled:
            logger.info(
                "Edge Config has failed %d consecutive times, saving to Blob storage first",
                self.health.failure_count,
            )
            blob_result = self.blob.save_registrations_to_blob(registrations)
            recovered = self._recheck_edge_config(registrations)
            if blob_result.success:
                return StorageResult(
                    True,
                    "Successfully saved registrations to Blob storage",
                    source=StorageTier.BLOB,
                )
            if recovered:
                return StorageResult(
                    True,
                    "Successfully saved registrations to Edge Config",
                    source=StorageTier.EDGE_CONFIG,
                )
            return self._local_result(local_ok)

        blob_ok = self.blob.sync_registrations_to_blob(registrations, force=True)
        try:
            self._ensure_edge_config()
            self.edge_config.set(self.key, registrations)
        except EdgeConfigSizeLimitError as exc:
            logger.warning(
                "Edge Config size limit reached, Blob storage becomes primary: %s", exc
            )
            self.health.mark_unavailable(size_limited=True)
            return StorageResult(
                blob_ok or local_ok,
                "Edge Config size limit reached; registrations kept in Blob/local storage",
                source=StorageTier.BLOB if blob_ok else StorageTier.LOCAL,
            )
        except EdgeConfigError as exc:
            count = self.health.record_failure()
            logger.error(
                "Error saving to Edge Config (%d consecutive failures): %s", count, exc
            )
            if blob_ok:
                return StorageResult(
                    True,
                    "Successfully saved registrations to Blob storage",
                    source=StorageTier.BLOB,
                )
            return self._local_result(local_ok)

        self.health.record_success()
        return StorageResult(
            True,
            "Successfully saved registrations to Edge Config",
            source=StorageTier.EDGE_CONFIG,
        )

    def _local_result(self, local_ok: bool) -> StorageResult:
        if local_ok:
            return StorageResult(
                True,
                "Successfully saved registrations to local storage",
                source=StorageTier.LOCAL,
            )
        return StorageResult(False, "Failed to save registrations to any storage tier")

    # -- maintenance -----------------------------------------------------------

    def test_edge_config(self, max_attempts: int = 5) -> bool:
        """Re-initialize and test-read Edge Config, backing off between attempts."""
        for attempt in range(1, max_attempts + 1):
            try:
                if not self.edge_config.reinitialize():
                    raise EdgeConfigUnavailableError("client initialization failed")
                self._read_edge_config()
            except EdgeConfigError as exc:
                logger.warning(
                    "Edge Config test attempt %d/%d failed: %s", attempt, max_attempts, exc
                )
                if attempt < max_attempts:
                    self.sleep(backoff_delay(attempt, self.retry_base_delay))
                continue
            logger.info("Edge Config test successful on attempt %d", attempt)
            return True
        self.health.edge_config_available = False
        return False

    def recheck_before_write(self, max_attempts: int = 3) -> bool:
        """Run the connectivity test when Edge Config has not answered yet.

        Skipped while degraded; the degraded save path does its own recheck.
        """
        if self.health.edge_config_available or self.health.degraded:
            return self.health.edge_config_available
        logger.info("Edge Config not available, testing before write")
        return self.test_edge_config(max_attempts)

    def reset_edge_config(self) -> bool:
        self.health.reset()
        ok = self.edge_config.reinitialize()
        self.health.edge_config_available = ok
        return ok

    def migrate_donation_fields(self) -> StorageResult:
        """Persist default donation fields for records stored without them."""
        try:
            self._ensure_edge_config()
            value = self.edge_config.get(self.key)
            if not isinstance(value, list):
                return StorageResult(True, "No registrations to migrate")
            missing = sum(
                1
                for record in value
                if isinstance(record, dict)
                and ("hasDonated" not in record or "donationAmount" not in record)
            )
            if not missing:
                return StorageResult(
                    True,
                    "All registrations already have donation fields",
                    value,
                    StorageTier.EDGE_CONFIG,
                )
            migrated = [
                normalize_registration(r) if isinstance(r, dict) else r for r in value
            ]
            self.edge_config.set(self.key, migrated)
        except EdgeConfigError as exc:
            logger.error("Error during donation field migration: %s", exc)
            return StorageResult(False, f"Migration failed: {exc}")
        self.local.write(migrated)
        return StorageResult(
            True,
            f"Migrated {missing} registrations with donation fields",
            migrated,
            StorageTier.EDGE_CONFIG,
        )

    def edge_config_status(self) -> dict:
        return {
            "available": self.health.edge_config_available,
            "state": self.edge_config.state.value,
            "failureCount": self.health.failure_count,
            "failureThreshold": self.health.failure_threshold,
            "sizeLimited": self.health.size_limited,
            "isPrimary": self.primary_tier() is StorageTier.EDGE_CONFIG,
        }

    def blob_status(self) -> dict:
        status = {
            "enabled": self.blob.enabled,
            "edgeConfig": self.edge_config_status(),
        }
        if not self.blob.enabled:
            return status
        result = self.blob.get_registrations_from_blob()
        status.update(
            {
                "hasMirror": result.success,
                "registrationCount": len(result.data) if result.success else 0,
                "syncInterval": self.blob.sync_interval_minutes,
                "filename": self.blob.filename,
                "directUrl": self.blob.registration_blob_url(),
                "lastSyncTime": (
                    self.blob.last_sync_time.isoformat()
                    if self.blob.last_sync_time
                    else None
                ),
                "isPrimary": self.primary_tier() is StorageTier.BLOB,
            }
        )
        return status

    def health_report(self) -> dict:
        edge_count = 0
        if self.health.edge_config_available and not self.health.degraded:
            try:
                value = self.edge_config.get(self.key)
                edge_count = len(value) if isinstance(value, list) else 0
            except EdgeConfigError as exc:
                logger.warning("Edge Config count failed during health check: %s", exc)

        blob_status = {"enabled": self.blob.enabled, "accessible": False, "count": 0}
        if self.blob.enabled:
            result = self.blob.get_registrations_from_blob()
            blob_status.update(
                accessible=result.success,
                count=len(result.data) if result.success else 0,
                url=self.blob.registration_blob_url(),
            )

        local_status = {
            "path": self.local.file_path,
            "exists": self.local.exists,
            "count": len(self.local.read()),
        }

        healthy = (
            self.health.edge_config_available
            or blob_status["accessible"]
            or local_status["exists"]
        )
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "overall": {
                "status": "healthy" if healthy else "unhealthy",
                "primaryStorage": self.primary_tier().value,
                "registrationCount": {
                    "edgeConfig": edge_count,
                    "blob": blob_status["count"],
                    "local": local_status["count"],
                },
            },
            "edgeConfig": self.edge_config_status(),
            "blobStorage": blob_status,
            "localStorage": local_status,
        }
