"""
Pydantic schemas for the site backend.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

TRUTHY_FLAGS = {"on", "yes", "true", "1"}


def parse_flag(value: Any) -> bool:
    """Checkbox-style flags arrive as 'on', 'yes', true, '1' and so on."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_FLAGS
    return False


def format_amount(value: Any) -> str:
    """Render a donation amount as a two-place decimal string."""
    if value is None or value == "":
        return "0.00"
    try:
        amount = Decimal(str(value).strip().lstrip("$"))
    except InvalidOperation as exc:
        raise ValueError(f"invalid donation amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"invalid donation amount: {value!r}")
    return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def normalize_registration(record: dict) -> dict:
    """Fill in the donation fields older records were stored without."""
    record.setdefault("hasDonated", False)
    record.setdefault("donationAmount", "0.00")
    return record


class Registration(BaseModel):
    """One attendee's signup; unknown form fields are kept as-is."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    registration_id: str = Field(..., alias="registrationId", min_length=1)
    first_name: str = Field(..., alias="firstName", min_length=1)
    last_name: str = Field(..., alias="lastName", min_length=1)
    email: str = Field(..., min_length=1)
    seder_night1: bool = Field(default=False, alias="sederNight1")
    seder_night2: bool = Field(default=False, alias="sederNight2")
    has_donated: bool = Field(default=False, alias="hasDonated")
    donation_amount: str = Field(default="0.00", alias="donationAmount")
    stripe_session_id: Optional[str] = Field(default=None, alias="stripeSessionId")
    registration_date: Optional[str] = Field(default=None, alias="registrationDate")
    donation_date: Optional[str] = Field(default=None, alias="donationDate")

    @field_validator("seder_night1", "seder_night2", "has_donated", mode="before")
    @classmethod
    def _parse_flag(cls, value: Any) -> bool:
        return parse_flag(value)

    @field_validator("donation_amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> str:
        return format_amount(value)

    @field_validator("first_name", "last_name", "email", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True)


class ApiResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    data: Any = None


class DonationUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    registration_id: Optional[str] = Field(default=None, alias="registrationId")
    donation_amount: Optional[Union[str, float, int]] = Field(
        default=None, alias="donationAmount"
    )
    stripe_session_id: Optional[str] = Field(default=None, alias="stripeSessionId")


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    donation_amount: Optional[Union[str, float, int]] = Field(
        default=None, alias="donationAmount"
    )
    donation_type: str = Field(default="one-time", alias="donationType")
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    email: Optional[str] = None


class RegistrationCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    registration_id: Optional[str] = Field(default=None, alias="registrationId")
    amount: Optional[int] = Field(default=None, description="Amount in cents")
    registration_data: Optional[dict] = Field(default=None, alias="registrationData")


class CheckoutSessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    url: Optional[str] = None
    session_id: str = Field(..., alias="sessionId")
