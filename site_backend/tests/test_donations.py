import hashlib
import hmac
import json
import time
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

import stripe

from site_backend.donations import (
    DonationService,
    DonationValidationError,
    PaymentNotConfiguredError,
    PaymentProviderError,
    StripeGateway,
    WebhookVerificationError,
    to_cents,
)
from site_backend.registrations import RegistrationNotFoundError

DETAILS = {
    "donationAmount": "25",
    "donationType": "one-time",
    "firstName": "Jane",
    "lastName": "Doe",
    "email": "j@x.com",
}


def sign(payload: str, secret: str) -> str:
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


class DonationCheckoutTests(unittest.TestCase):
    def setUp(self):
        self.stripe = MagicMock()
        self.stripe.checkout.Session.create.return_value = SimpleNamespace(
            id="cs_test_1", url="https://checkout.stripe.test/cs_test_1"
        )
        self.registrations = MagicMock()
        self.service = DonationService(
            StripeGateway("sk_test", client=self.stripe), self.registrations
        )

    def session_params(self):
        return self.stripe.checkout.Session.create.call_args.kwargs

    def test_to_cents(self):
        self.assertEqual(to_cents("25"), 2500)
        self.assertEqual(to_cents(10.005), 1001)
        self.assertEqual(to_cents("$18.50"), 1850)
        with self.assertRaises(DonationValidationError):
            to_cents("0")
        with self.assertRaises(DonationValidationError):
            to_cents("abc")

    def test_one_time_donation(self):
        result = self.service.create_donation_checkout_session(
            DETAILS, "https://site.test/"
        )
        self.assertEqual(
            result,
            {
                "success": True,
                "url": "https://checkout.stripe.test/cs_test_1",
                "sessionId": "cs_test_1",
            },
        )
        params = self.session_params()
        self.assertEqual(params["api_key"], "sk_test")
        self.assertEqual(params["mode"], "payment")
        self.assertEqual(
            params["success_url"],
            "https://site.test/donation-success.html?donation=true&type=one-time",
        )
        self.assertEqual(params["cancel_url"], "https://site.test/donate.html")
        line_item = params["line_items"][0]
        self.assertEqual(line_item["price_data"]["unit_amount"], 2500)
        self.assertEqual(
            line_item["price_data"]["product_data"]["name"], "One-time Donation"
        )

    def test_recurring_donation_creates_monthly_price(self):
        self.stripe.Product.create.return_value = SimpleNamespace(id="prod_1")
        self.stripe.Price.create.return_value = SimpleNamespace(id="price_1")

        self.service.create_donation_checkout_session(
            dict(DETAILS, donationType="recurring"), "https://site.test"
        )
        self.assertEqual(
            self.stripe.Product.create.call_args.kwargs["name"], "Monthly Donation"
        )
        price_kwargs = self.stripe.Price.create.call_args.kwargs
        self.assertEqual(price_kwargs["product"], "prod_1")
        self.assertEqual(price_kwargs["unit_amount"], 2500)
        self.assertEqual(price_kwargs["recurring"], {"interval": "month"})
        params = self.session_params()
        self.assertEqual(params["mode"], "subscription")
        self.assertEqual(params["line_items"], [{"price": "price_1", "quantity": 1}])

    def test_sponsor_donation_product(self):
        self.service.create_donation_checkout_session(
            dict(DETAILS, donationType="sponsor"), "https://site.test"
        )
        product = self.session_params()["line_items"][0]["price_data"]["product_data"]
        self.assertEqual(product["name"], "Student Sponsorship")

    def test_vercel_url_overrides_origin(self):
        self.service.vercel_url = "site.vercel.app"
        self.service.create_donation_checkout_session(DETAILS, "http://localhost:3000")
        self.assertEqual(
            self.session_params()["cancel_url"], "https://site.vercel.app/donate.html"
        )

    def test_missing_fields_are_rejected(self):
        with self.assertRaises(DonationValidationError):
            self.service.create_donation_checkout_session(
                dict(DETAILS, email=""), "https://site.test"
            )
        self.stripe.checkout.Session.create.assert_not_called()

    def test_unconfigured_stripe(self):
        service = DonationService(
            StripeGateway(None, client=self.stripe), self.registrations
        )
        with self.assertRaises(PaymentNotConfiguredError):
            service.create_donation_checkout_session(DETAILS, "https://site.test")

    def test_stripe_errors_are_wrapped(self):
        self.stripe.checkout.Session.create.side_effect = stripe.StripeError("declined")
        with self.assertRaises(PaymentProviderError):
            self.service.create_donation_checkout_session(DETAILS, "https://site.test")

    def test_registration_checkout_session(self):
        result = self.service.create_registration_checkout_session(
            "reg-1",
            1800,
            {"firstName": "Jane", "lastName": "Doe", "email": "j@x.com"},
            "https://site.test",
        )
        self.assertEqual(result["sessionId"], "cs_test_1")
        params = self.session_params()
        self.assertEqual(
            params["success_url"],
            "https://site.test/passover-registration-success.html"
            "?registration_id=reg-1&donation=true",
        )
        self.assertEqual(params["metadata"]["registrationId"], "reg-1")
        self.assertEqual(params["line_items"][0]["price_data"]["unit_amount"], 1800)
        self.assertEqual(
            params["line_items"][0]["price_data"]["product_data"]["name"],
            "Passover Seder Donation",
        )

    def test_registration_checkout_requires_fields(self):
        with self.assertRaises(DonationValidationError):
            self.service.create_registration_checkout_session(
                "reg-1", None, {"firstName": "Jane"}, "https://site.test"
            )


class WebhookTests(unittest.TestCase):
    def setUp(self):
        self.registrations = MagicMock()
        self.event = {
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_1",
                    "amount_total": 3000,
                    "metadata": {"registrationId": "reg-1"},
                }
            },
        }

    def service(self, webhook_secret=None):
        return DonationService(
            StripeGateway("sk_test", webhook_secret, client=stripe), self.registrations
        )

    def test_unsigned_payload_is_parsed_without_secret(self):
        event = self.service().construct_webhook_event(
            json.dumps(self.event).encode("utf-8"), None
        )
        self.assertEqual(event["type"], "checkout.session.completed")

    def test_signed_payload_is_verified(self):
        payload = json.dumps(self.event)
        service = self.service(webhook_secret="whsec_test")
        event = service.construct_webhook_event(
            payload.encode("utf-8"), sign(payload, "whsec_test")
        )
        self.assertEqual(event["data"]["object"]["id"], "cs_test_1")

    def test_bad_signature_is_rejected(self):
        payload = json.dumps(self.event)
        service = self.service(webhook_secret="whsec_test")
        with self.assertRaises(WebhookVerificationError):
            service.construct_webhook_event(
                payload.encode("utf-8"), sign(payload, "whsec_other")
            )

    def test_invalid_json_is_rejected(self):
        with self.assertRaises(WebhookVerificationError):
            self.service().construct_webhook_event(b"not json", None)

    def test_completed_checkout_records_donation(self):
        result = self.service().handle_webhook_event(self.event)
        self.assertEqual(result, {"received": True, "registrationUpdated": True})
        self.registrations.update_registration_donation.assert_called_once_with(
            "reg-1", 30.0, "cs_test_1"
        )

    def test_unknown_registration_is_acknowledged(self):
        self.registrations.update_registration_donation.side_effect = (
            RegistrationNotFoundError("missing")
        )
        result = self.service().handle_webhook_event(self.event)
        self.assertEqual(result, {"received": True, "registrationUpdated": False})

    def test_other_events_are_ignored(self):
        result = self.service().handle_webhook_event({"type": "invoice.paid"})
        self.assertEqual(result, {"received": True})
        self.registrations.update_registration_donation.assert_not_called()


if __name__ == "__main__":
    unittest.main()
