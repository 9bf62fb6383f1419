import os
import tempfile
import unittest
from unittest.mock import MagicMock

from site_backend.blob_storage import BlobMirror, InMemoryBlobStorageClient
from site_backend.edge_config import EdgeConfigClient, InMemoryEdgeConfigTransport
from site_backend.local_store import LocalFileStore
from site_backend.registrations import (
    RegistrationNotFoundError,
    RegistrationService,
    RegistrationStorageError,
    RegistrationValidationError,
    find_registration,
)
from site_backend.storage import RegistrationStorage, StorageResult


class RegistrationServiceTests(unittest.TestCase):
    def setUp(self):
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        transport = InMemoryEdgeConfigTransport()
        self.storage = RegistrationStorage(
            EdgeConfigClient(
                config_id="ecfg",
                token="tok",
                sdk_factory=lambda connection: transport,
                raw_factory=lambda connection: transport,
            ),
            BlobMirror(InMemoryBlobStorageClient()),
            LocalFileStore(os.path.join(tmpdir.name, "registrations.json")),
            sleep=lambda _: None,
        )
        self.service = RegistrationService(self.storage)

    def store(self, **fields):
        payload = {"firstName": "Jane", "lastName": "Doe", "email": "j@x.com"}
        payload.update(fields)
        record, _ = self.service.store_registration(payload)
        return record

    def test_store_stamps_defaults(self):
        record = self.store()
        self.assertFalse(record["hasDonated"])
        self.assertEqual(record["donationAmount"], "0.00")
        self.assertTrue(record["registrationDate"])
        self.assertEqual(len(record["registrationId"]), 32)

        stored = self.service.get_all_registrations().data
        self.assertEqual([r["registrationId"] for r in stored], [record["registrationId"]])

    def test_store_keeps_submitted_id_and_extra_fields(self):
        record = self.store(
            registrationId="reg-1",
            sederNight1="on",
            sederNight2="no",
            dietaryNeeds="vegetarian",
        )
        self.assertEqual(record["registrationId"], "reg-1")
        self.assertTrue(record["sederNight1"])
        self.assertFalse(record["sederNight2"])
        self.assertEqual(record["dietaryNeeds"], "vegetarian")

    def test_store_ignores_submitted_donation_state(self):
        record = self.store(
            hasDonated="yes",
            donationAmount="500",
            registrationDate="1999-01-01",
            stripeSessionId="cs_forged",
            donationDate="1999-01-02",
        )
        self.assertIs(record["hasDonated"], False)
        self.assertEqual(record["donationAmount"], "0.00")
        self.assertNotEqual(record["registrationDate"], "1999-01-01")
        self.assertIsNone(record["stripeSessionId"])
        self.assertIsNone(record["donationDate"])

        stored = self.service.get_registration_by_id(record["registrationId"])
        self.assertIs(stored["hasDonated"], False)
        self.assertEqual(stored["donationAmount"], "0.00")

    def test_store_rejects_existing_id(self):
        self.store(registrationId="dup")
        with self.assertRaises(RegistrationValidationError):
            self.store(registrationId="dup")
        with self.assertRaises(RegistrationValidationError):
            self.store(registrationId="DUP")
        ids = [r["registrationId"] for r in self.service.get_all_registrations().data]
        self.assertEqual(ids, ["dup"])

    def test_store_requires_name_and_email(self):
        with self.assertRaises(RegistrationValidationError):
            self.service.store_registration({"firstName": "Jane", "lastName": "Doe"})
        with self.assertRaises(RegistrationValidationError):
            self.service.store_registration(
                {"firstName": " ", "lastName": "Doe", "email": "j@x.com"}
            )
        self.assertEqual(self.service.get_all_registrations().data, [])

    def test_lookup_matches_exact_then_loose_id(self):
        self.store(registrationId="ABC-123-def")
        self.assertEqual(
            self.service.get_registration_by_id("ABC-123-def")["registrationId"],
            "ABC-123-def",
        )
        self.assertEqual(
            self.service.get_registration_by_id("abc123def")["registrationId"],
            "ABC-123-def",
        )

    def test_lookup_errors(self):
        with self.assertRaises(RegistrationNotFoundError):
            self.service.get_registration_by_id("missing")
        with self.assertRaises(RegistrationValidationError):
            self.service.get_registration_by_id(None)

    def test_update_donation(self):
        record = self.store()
        updated = self.service.update_registration_donation(
            record["registrationId"], "25", "cs_test_1"
        )
        self.assertTrue(updated["hasDonated"])
        self.assertEqual(updated["donationAmount"], "25.00")
        self.assertEqual(updated["stripeSessionId"], "cs_test_1")
        self.assertTrue(updated["donationDate"])

        stored = self.service.get_registration_by_id(record["registrationId"])
        self.assertTrue(stored["hasDonated"])

    def test_update_donation_unknown_id(self):
        with self.assertRaises(RegistrationNotFoundError):
            self.service.update_registration_donation("missing", "10")

    def test_update_donation_rejects_bad_amount(self):
        record = self.store()
        with self.assertRaises(RegistrationValidationError):
            self.service.update_registration_donation(record["registrationId"], "lots")

    def test_delete(self):
        keep = self.store(registrationId="keep")
        self.store(registrationId="drop")
        removed = self.service.delete_registration("drop")
        self.assertEqual(removed["registrationId"], "drop")
        remaining = self.service.get_all_registrations().data
        self.assertEqual([r["registrationId"] for r in remaining], [keep["registrationId"]])
        with self.assertRaises(RegistrationNotFoundError):
            self.service.delete_registration("drop")
        self.assertEqual(len(self.service.get_all_registrations().data), 1)

    def test_failed_save_raises(self):
        storage = MagicMock()
        storage.get_registrations.return_value = StorageResult(True, "ok", [])
        storage.save_registrations.return_value = StorageResult(False, "no tier")
        service = RegistrationService(storage)
        with self.assertRaises(RegistrationStorageError):
            service.store_registration(
                {"firstName": "Jane", "lastName": "Doe", "email": "j@x.com"}
            )


class FindRegistrationTests(unittest.TestCase):
    def test_exact_match_wins_over_loose_match(self):
        registrations = [{"registrationId": "ab-c"}, {"registrationId": "abc"}]
        self.assertEqual(find_registration(registrations, "abc"), 1)
        self.assertEqual(find_registration(registrations, "AB-C"), 0)

    def test_hyphens_and_case_are_ignored(self):
        self.assertEqual(find_registration([{"registrationId": "abc123"}], "ABC-123"), 0)

    def test_records_without_id_are_skipped(self):
        self.assertIsNone(find_registration([{"firstName": "Jane"}], "abc"))


if __name__ == "__main__":
    unittest.main()
