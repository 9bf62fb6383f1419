"""
Registration CRUD on top of the storage facade.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from site_backend.schemas import Registration, format_amount
from site_backend.storage import RegistrationStorage, StorageResult

logger = logging.getLogger(__name__)


class RegistrationError(Exception):
    """Base class for registration service errors."""


class RegistrationValidationError(RegistrationError):
    pass


class RegistrationNotFoundError(RegistrationError):
    pass


class RegistrationStorageError(RegistrationError):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _loose_id(value: Any) -> str:
    return str(value).replace("-", "").strip().lower()


def find_registration(registrations: list, registration_id: str) -> Optional[int]:
    """
    Index of the record matching `registration_id`, or None.

    Exact matches win; otherwise ids are compared ignoring case and hyphens
    so links that mangled a UUID still resolve.
    """
    for index, record in enumerate(registrations):
        if str(record.get("registrationId")) == registration_id:
            return index
    wanted = _loose_id(registration_id)
    for index, record in enumerate(registrations):
        if record.get("registrationId") and _loose_id(record["registrationId"]) == wanted:
            return index
    return None


class RegistrationService:
    def __init__(self, storage: RegistrationStorage):
        self.storage = storage
        # Serializes read-modify-write cycles within this process.
        self._lock = threading.Lock()

    def _save(self, registrations: list) -> StorageResult:
        result = self.storage.save_registrations(registrations)
        if not result.success:
            raise RegistrationStorageError(result.message)
        return result

    def get_all_registrations(self) -> StorageResult:
        return self.storage.get_registrations()

    def get_registration_by_id(self, registration_id: Optional[str]) -> dict:
        if not registration_id:
            raise RegistrationValidationError("Registration ID is required")
        registrations = self.storage.get_registrations().data
        index = find_registration(registrations, registration_id)
        if index is None:
            logger.info("Registration %s not found among %d", registration_id, len(registrations))
            raise RegistrationNotFoundError(f"Registration not found: {registration_id}")
        return registrations[index]

    def store_registration(self, payload: dict) -> tuple[dict, StorageResult]:
        """Validate, stamp and append a new registration."""
        payload = dict(payload)
        if not payload.get("registrationId"):
            payload["registrationId"] = uuid.uuid4().hex
        # Donation state is only ever set by the payment flow.
        for name in ("stripeSessionId", "donationDate"):
            payload.pop(name, None)
        payload["registrationDate"] = _now_iso()
        payload["hasDonated"] = False
        payload["donationAmount"] = "0.00"
        try:
            record = Registration.model_validate(payload).to_record()
        except ValidationError as exc:
            raise RegistrationValidationError(
                "First name, last name and email are required"
            ) from exc

        with self._lock:
            registrations = self.storage.get_registrations().data
            if find_registration(registrations, record["registrationId"]) is not None:
                raise RegistrationValidationError(
                    f"Registration already exists: {record['registrationId']}"
                )
            registrations.append(record)
            result = self._save(registrations)
        logger.info(
            "Stored registration %s (%d total, %s)",
            record["registrationId"],
            len(registrations),
            result.message,
        )
        return record, result

    def update_registration_donation(
        self,
        registration_id: Optional[str],
        donation_amount: Any,
        stripe_session_id: Optional[str] = None,
    ) -> dict:
        if not registration_id:
            raise RegistrationValidationError("Registration ID is required")
        try:
            amount = format_amount(donation_amount)
        except ValueError as exc:
            raise RegistrationValidationError(str(exc)) from exc

        with self._lock:
            registrations = self.storage.get_registrations().data
            index = find_registration(registrations, registration_id)
            if index is None:
                raise RegistrationNotFoundError(
                    f"Registration not found: {registration_id}"
                )
            record = registrations[index]
            record.update(
                hasDonated=True,
                donationAmount=amount,
                donationDate=_now_iso(),
            )
            if stripe_session_id:
                record["stripeSessionId"] = stripe_session_id
            self._save(registrations)
        logger.info("Recorded donation of %s for registration %s", amount, registration_id)
        return record

    def delete_registration(self, registration_id: Optional[str]) -> dict:
        if not registration_id:
            raise RegistrationValidationError("Registration ID is required")
        with self._lock:
            registrations = self.storage.get_registrations().data
            index = find_registration(registrations, registration_id)
            if index is None:
                raise RegistrationNotFoundError(
                    f"Registration not found: {registration_id}"
                )
            removed = registrations.pop(index)
            self._save(registrations)
        logger.info("Deleted registration %s", removed.get("registrationId"))
        return removed
