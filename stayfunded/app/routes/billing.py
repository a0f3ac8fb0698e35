"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from ..billing import BillingError, Unauthenticated, Unavailable
from ..billing.auth import AuthenticatedUser
from ..schemas.billing import (
    CheckoutSessionRequest,
    CheckoutUsageHint,
    EntitlementSummaryResponse,
    SessionRedirectResponse,
    WebhookAck,
)
from ..services.billing import get_authenticator, get_billing_service, get_entitlement_service

logger = logging.getLogger("billing.webhook")


def _authenticate(authorization: Optional[str], status_code: Optional[int] = None) -> AuthenticatedUser:
    try:
        return get_authenticator().authenticate(authorization)
    except Unauthenticated as exc:
        raise exc.to_http_exception(status_code) from exc


def _get_current_user(authorization: Optional[str] = Header(None)) -> AuthenticatedUser:
    return _authenticate(authorization)


def _get_session_user(authorization: Optional[str] = Header(None)) -> AuthenticatedUser:
    """Session endpoints answer every caller error, auth included, with 400."""

    return _authenticate(authorization, status.HTTP_400_BAD_REQUEST)


async def _read_checkout_request(request: Request) -> CheckoutSessionRequest:
    try:
        document = await request.json()
    except ValueError:
        document = {}
    plan = document.get("plan") if isinstance(document, dict) else None
    return CheckoutSessionRequest(plan=plan if isinstance(plan, str) else None)


def _session_error(exc: BillingError) -> HTTPException:
    if isinstance(exc, Unavailable):
        return exc.to_http_exception()
    return exc.to_http_exception(status.HTTP_400_BAD_REQUEST)


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(request: Request) -> WebhookAck:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    service = get_billing_service()
    try:
        outcome = await run_in_threadpool(service.handle_webhook, payload, signature)
    except Unavailable as exc:
        logger.error("Webhook processing deferred: %s", exc.message)
        raise exc.to_http_exception(status.HTTP_500_INTERNAL_SERVER_ERROR) from exc
    except BillingError as exc:
        logger.warning("Webhook rejected: %s", exc.message)
        raise exc.to_http_exception(status.HTTP_400_BAD_REQUEST) from exc
    except Exception as exc:
        logger.exception("Webhook handler failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook handler failed"
        ) from exc

    logger.debug("Webhook %s handled: %s", outcome.event_id, outcome.result.value)
    return WebhookAck(received=True)


@router.get("/checkout-session", response_model=CheckoutUsageHint)
def describe_checkout_session() -> CheckoutUsageHint:
    return CheckoutUsageHint()


@router.post("/checkout-session", response_model=SessionRedirectResponse)
async def create_checkout_session(
    request: Request,
    *,
    current_user=Depends(_get_session_user),
) -> SessionRedirectResponse:
    payload = await _read_checkout_request(request)
    service = get_billing_service()
    try:
        session = await run_in_threadpool(
            service.create_checkout_session, user_id=str(current_user.id), plan=payload.plan
        )
    except BillingError as exc:
        raise _session_error(exc) from exc
    return SessionRedirectResponse(url=session.url)


@router.post("/portal-session", response_model=SessionRedirectResponse)
def create_portal_session(
    *,
    current_user=Depends(_get_session_user),
) -> SessionRedirectResponse:
    service = get_billing_service()
    try:
        session = service.create_portal_session(user_id=str(current_user.id))
    except BillingError as exc:
        raise _session_error(exc) from exc
    return SessionRedirectResponse(url=session.url)


@router.get("/entitlement", response_model=EntitlementSummaryResponse, response_model_by_alias=True)
def read_entitlement(
    *,
    current_user=Depends(_get_current_user),
) -> EntitlementSummaryResponse:
    service = get_entitlement_service()
    try:
        summary = service.summarize(str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return EntitlementSummaryResponse.from_summary(summary)
