"""
Stripe Checkout sessions for donations and the webhook that records them.
"""

from __future__ import annotations

import json
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

import stripe

from site_backend.registrations import (
    RegistrationNotFoundError,
    RegistrationService,
)

logger = logging.getLogger(__name__)

DONATION_PRODUCTS = {
    "one-time": ("One-time Donation", "Thank you for supporting {org}"),
    "recurring": ("Monthly Donation", "Thank you for your monthly support of {org}"),
    "sponsor": ("Student Sponsorship", "Thank you for sponsoring a student at {org}"),
}
REGISTRATION_PRODUCT = (
    "Passover Seder Donation",
    "Thank you for supporting our Passover Seder",
)


class DonationError(Exception):
    """Base class for donation errors."""


class DonationValidationError(DonationError):
    pass


class PaymentProviderError(DonationError):
    pass


class PaymentNotConfiguredError(PaymentProviderError):
    pass


class WebhookVerificationError(DonationError):
    pass


def to_cents(amount: Any) -> int:
    try:
        value = Decimal(str(amount).strip().lstrip("$"))
    except InvalidOperation as exc:
        raise DonationValidationError(f"invalid donation amount: {amount!r}") from exc
    if not value.is_finite() or value <= 0:
        raise DonationValidationError(f"invalid donation amount: {amount!r}")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway:
    """Thin wrapper over the `stripe` module so calls can be replaced in tests."""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        client: Any = stripe,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.client = client

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _call(self, fn, **params) -> Any:
        if not self.configured:
            raise PaymentNotConfiguredError("Stripe secret key is not configured")
        try:
            return fn(api_key=self.secret_key, **params)
        except stripe.StripeError as exc:
            raise PaymentProviderError(str(exc)) from exc

    def create_checkout_session(self, **params) -> Any:
        return self._call(self.client.checkout.Session.create, **params)

    def create_product(self, **params) -> Any:
        return self._call(self.client.Product.create, **params)

    def create_price(self, **params) -> Any:
        return self._call(self.client.Price.create, **params)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Parse a webhook body, verifying its signature when a secret is set."""
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        if self.webhook_secret:
            try:
                self.client.WebhookSignature.verify_header(
                    text, signature or "", self.webhook_secret
                )
            except stripe.SignatureVerificationError as exc:
                raise WebhookVerificationError(str(exc)) from exc
        try:
            event = json.loads(text)
        except ValueError as exc:
            raise WebhookVerificationError(f"invalid webhook payload: {exc}") from exc
        if not isinstance(event, dict):
            raise WebhookVerificationError("webhook payload is not an object")
        return event


class DonationService:
    def __init__(
        self,
        gateway: StripeGateway,
        registrations: RegistrationService,
        *,
        currency: str = "usd",
        organization_name: str = "Rejewvenate",
        vercel_url: Optional[str] = None,
    ):
        self.gateway = gateway
        self.registrations = registrations
        self.currency = currency
        self.organization_name = organization_name
        self.vercel_url = vercel_url

    def base_url(self, origin: Optional[str]) -> str:
        if self.vercel_url:
            origin = f"https://{self.vercel_url}"
        if not origin:
            raise DonationValidationError("Request origin is required for checkout URLs")
        return origin.rstrip("/")

    def create_donation_checkout_session(self, details: dict, origin: Optional[str]) -> dict:
        missing = [
            name
            for name in ("donationAmount", "firstName", "lastName", "email")
            if not details.get(name)
        ]
        if missing:
            raise DonationValidationError("Missing required fields for checkout session")

        donation_type = details.get("donationType") or "one-time"
        amount_cents = to_cents(details["donationAmount"])
        base = self.base_url(origin)
        name, description = DONATION_PRODUCTS.get(
            donation_type, DONATION_PRODUCTS["one-time"]
        )
        description = description.format(org=self.organization_name)

        params = {
            "payment_method_types": ["card"],
            "metadata": {
                "donationType": donation_type,
                "firstName": details["firstName"],
                "lastName": details["lastName"],
                "email": details["email"],
                "donationAmount": str(details["donationAmount"]),
            },
            "success_url": f"{base}/donation-success.html?donation=true&type={donation_type}",
            "cancel_url": f"{base}/donate.html",
        }
        if donation_type == "recurring":
            product = self.gateway.create_product(name=name, description=description)
            price = self.gateway.create_price(
                product=product.id,
                unit_amount=amount_cents,
                currency=self.currency,
                recurring={"interval": "month"},
            )
            params["line_items"] = [{"price": price.id, "quantity": 1}]
            params["mode"] = "subscription"
        else:
            params["line_items"] = [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": name, "description": description},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ]
            params["mode"] = "payment"

        logger.info(
            "Creating %s checkout session for %d cents (success URL %s)",
            donation_type,
            amount_cents,
            params["success_url"],
        )
        session = self.gateway.create_checkout_session(**params)
        return {"success": True, "url": session.url, "sessionId": session.id}

    def create_registration_checkout_session(
        self,
        registration_id: Optional[str],
        amount_cents: Optional[int],
        registration_data: Optional[dict],
        origin: Optional[str],
    ) -> dict:
        if not registration_id or not amount_cents or not registration_data:
            raise DonationValidationError("Missing required fields for checkout session")
        if amount_cents < 0:
            raise DonationValidationError(f"invalid donation amount: {amount_cents!r}")
        base = self.base_url(origin)
        name, description = REGISTRATION_PRODUCT
        success_page = f"{base}/passover-registration-success.html?registration_id={registration_id}"

        session = self.gateway.create_checkout_session(
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": name, "description": description},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            success_url=f"{success_page}&donation=true",
            cancel_url=success_page,
            metadata={
                "registrationId": registration_id,
                "firstName": registration_data.get("firstName"),
                "lastName": registration_data.get("lastName"),
                "email": registration_data.get("email"),
                "donationAmount": str(registration_data.get("donationAmount") or ""),
            },
        )
        logger.info("Created seder checkout session %s for %s", session.id, registration_id)
        return {"success": True, "url": session.url, "sessionId": session.id}

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]) -> dict:
        return self.gateway.construct_event(payload, signature)

    def handle_webhook_event(self, event: dict) -> dict:
        event_type = event.get("type")
        logger.info("Received webhook event: %s", event_type)
        if event_type != "checkout.session.completed":
            return {"received": True}

        session = (event.get("data") or {}).get("object") or {}
        amount = (session.get("amount_total") or 0) / 100
        registration_id = (session.get("metadata") or {}).get("registrationId")
        logger.info("Checkout session %s completed: $%.2f", session.get("id"), amount)
        if not registration_id:
            return {"received": True}

        try:
            self.registrations.update_registration_donation(
                registration_id, amount, session.get("id")
            )
        except RegistrationNotFoundError:
            logger.warning(
                "Completed checkout %s references unknown registration %s",
                session.get("id"),
                registration_id,
            )
            return {"received": True, "registrationUpdated": False}
        return {"received": True, "registrationUpdated": True}
