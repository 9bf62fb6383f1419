"""
HTTP routes for the site backend.

Every endpoint answers with the `{success, message?, data?}` envelope; error
envelopes are rendered by the handlers registered in `site_backend.app`.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool

from site_backend.config import Settings, get_settings
from site_backend.dependencies import (
    get_donation_service,
    get_registration_service,
    get_registration_storage,
)
from site_backend.donations import DonationService
from site_backend.registrations import RegistrationService
from site_backend.schemas import (
    ApiResponse,
    CheckoutRequest,
    CheckoutSessionResponse,
    DonationUpdateRequest,
    RegistrationCheckoutRequest,
)
from site_backend.storage import RegistrationStorage

logger = logging.getLogger(__name__)

router = APIRouter()


def require_admin(
    password: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.admin_password:
        logger.error("ADMIN_PASSWORD is not set, refusing admin request")
        raise HTTPException(status_code=401, detail="Unauthorized")
    if password != settings.admin_password:
        logger.info("Admin request rejected: invalid password")
        raise HTTPException(status_code=401, detail="Unauthorized")


def request_origin(request: Request) -> str:
    origin = request.headers.get("origin") or request.headers.get("host") or ""
    if origin and not origin.startswith("http"):
        origin = f"{request.url.scheme}://{origin}"
    return origin


async def _form_or_json(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Expected a JSON object")
        return payload
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


# -- registrations -----------------------------------------------------------


@router.post("/store-passover-registration", response_model=ApiResponse)
async def store_passover_registration(
    request: Request,
    service: RegistrationService = Depends(get_registration_service),
    storage: RegistrationStorage = Depends(get_registration_storage),
):
    payload = await _form_or_json(request)
    await run_in_threadpool(storage.recheck_before_write, 3)
    record, result = await run_in_threadpool(service.store_registration, payload)
    logger.info("Registration stored via %s", result.source.value if result.source else "none")
    return ApiResponse(
        success=True, message="Registration saved successfully", data=record
    )


@router.get("/get-passover-registrations", response_model=ApiResponse)
@router.get("/api/get-passover-registrations", response_model=ApiResponse)
def get_passover_registrations(
    id: Optional[str] = Query(default=None),
    service: RegistrationService = Depends(get_registration_service),
):
    if id:
        return ApiResponse(success=True, data=service.get_registration_by_id(id))
    result = service.get_all_registrations()
    return ApiResponse(success=True, message=result.message, data=result.data)


@router.get("/registration/{registration_id}", response_model=ApiResponse)
def get_registration(
    registration_id: str,
    service: RegistrationService = Depends(get_registration_service),
):
    return ApiResponse(success=True, data=service.get_registration_by_id(registration_id))


@router.delete(
    "/delete-passover-registration/{registration_id}", response_model=ApiResponse
)
def delete_passover_registration(
    registration_id: str,
    service: RegistrationService = Depends(get_registration_service),
):
    service.delete_registration(registration_id)
    return ApiResponse(success=True, message="Registration deleted successfully")


@router.post("/update-registration-donation", response_model=ApiResponse)
def update_registration_donation(
    payload: DonationUpdateRequest,
    service: RegistrationService = Depends(get_registration_service),
):
    record = service.update_registration_donation(
        payload.registration_id, payload.donation_amount, payload.stripe_session_id
    )
    return ApiResponse(
        success=True, message="Registration updated with donation info", data=record
    )


# -- admin -----------------------------------------------------------------------


@router.get(
    "/admin/registrations",
    response_model=ApiResponse,
    dependencies=[Depends(require_admin)],
)
def admin_registrations(
    service: RegistrationService = Depends(get_registration_service),
):
    result = service.get_all_registrations()
    return ApiResponse(success=True, message=result.message, data=result.data)


@router.post(
    "/admin/sync-to-blob",
    response_model=ApiResponse,
    dependencies=[Depends(require_admin)],
)
def admin_sync_to_blob(
    storage: RegistrationStorage = Depends(get_registration_storage),
):
    if not storage.blob.enabled:
        raise HTTPException(
            status_code=400, detail="Blob mirroring is not enabled in configuration"
        )
    registrations = storage.get_registrations().data
    if not storage.blob.sync_registrations_to_blob(registrations, force=True):
        raise HTTPException(
            status_code=500, detail="Failed to sync registrations to blob storage"
        )
    return ApiResponse(
        success=True,
        message=f"Successfully synced {len(registrations)} registrations to blob storage",
    )


@router.get(
    "/admin/blob-status",
    response_model=ApiResponse,
    dependencies=[Depends(require_admin)],
)
def admin_blob_status(
    storage: RegistrationStorage = Depends(get_registration_storage),
):
    status = storage.blob_status()
    message = None if status["enabled"] else "Blob mirroring is not enabled"
    return ApiResponse(success=True, message=message, data=status)


@router.get(
    "/admin/health",
    response_model=ApiResponse,
    dependencies=[Depends(require_admin)],
)
def admin_health(
    storage: RegistrationStorage = Depends(get_registration_storage),
):
    return ApiResponse(success=True, data=storage.health_report())


@router.post(
    "/admin/edge-config/reset",
    response_model=ApiResponse,
    dependencies=[Depends(require_admin)],
)
def admin_reset_edge_config(
    storage: RegistrationStorage = Depends(get_registration_storage),
):
    ready = storage.reset_edge_config()
    message = (
        "Edge Config client re-initialized"
        if ready
        else "Edge Config client could not be initialized"
    )
    return ApiResponse(success=ready, message=message, data=storage.edge_config_status())


# -- donations -------------------------------------------------------------------


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutRequest,
    request: Request,
    donations: DonationService = Depends(get_donation_service),
):
    return donations.create_donation_checkout_session(
        payload.model_dump(by_alias=True), request_origin(request)
    )


@router.post(
    "/create-passover-checkout-session", response_model=CheckoutSessionResponse
)
def create_passover_checkout_session(
    payload: RegistrationCheckoutRequest,
    request: Request,
    donations: DonationService = Depends(get_donation_service),
):
    return donations.create_registration_checkout_session(
        payload.registration_id,
        payload.amount,
        payload.registration_data,
        request_origin(request),
    )


@router.post("/stripe-webhook", response_model=ApiResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    donations: DonationService = Depends(get_donation_service),
):
    body = await request.body()
    event = donations.construct_webhook_event(body, stripe_signature)
    result = await run_in_threadpool(donations.handle_webhook_event, event)
    return ApiResponse(success=True, message="Webhook received", data=result)
