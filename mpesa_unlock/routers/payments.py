from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, ConfigDict

from mpesa_unlock.core.config import get_settings
from mpesa_unlock.core.exceptions import BadRequestError, ForbiddenError
from mpesa_unlock.core.logging import get_logger
from mpesa_unlock.core.security import (
    CSRF_COOKIE_NAME,
    PAID_SESSION_COOKIE_NAME,
    create_paid_session_cookie,
    issue_csrf_token,
    load_paid_session_cookie,
    verify_callback_source,
)
from mpesa_unlock.deps import enforce_rate_limit, get_gateway, require_configured_gateway, require_csrf
from mpesa_unlock.services import payments as payments_service
from mpesa_unlock.services.gateway import MpesaGateway
from mpesa_unlock.services.rate_limit import client_identity

router = APIRouter()
log = get_logger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class InitiateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sessionId: str | None = None
    phoneNumber: str | None = None


@router.get("/csrf")
async def csrf_token(response: Response):
    """Issue a CSRF token: cookie readable by page script, echoed back in X-CSRF-Token."""
    token = issue_csrf_token()
    response.set_cookie(
        key=CSRF_COOKIE_NAME,
        value=token,
        max_age=get_settings().csrf_max_age_seconds,
        httponly=False,
        secure=True,
        samesite="strict",
        path="/",
    )
    response.headers.update(NO_CACHE_HEADERS)
    return {"success": True, "token": token}


@router.post(
    "/mpesa/initiate",
    dependencies=[
        Depends(require_configured_gateway),
        Depends(enforce_rate_limit),
        Depends(require_csrf),
    ],
)
async def mpesa_initiate(body: InitiateRequest, gateway: MpesaGateway = Depends(get_gateway)):
    """Send an STK push for the session's unlock fee. Idempotent within the window."""
    attempt = await payments_service.initiate(body.sessionId, body.phoneNumber or "", gateway)
    return {"success": True, "checkoutRequestID": attempt.checkout_request_id, "amount": attempt.amount}


@router.post("/mpesa/callback")
async def mpesa_callback(request: Request, token: str | None = Query(None)):
    """Daraja STK callback. Acknowledged even when the checkout id is unknown."""
    verify_callback_source(token, client_identity(request))
    try:
        payload: Any = await request.json()
    except ValueError:
        raise BadRequestError("Invalid callback payload")
    await payments_service.handle_callback(payload)
    return {"success": True, "ResultCode": 0, "ResultDesc": "Accepted"}


@router.get("/mpesa/status")
async def mpesa_status(response: Response, sessionId: str = Query("")):
    """Latest attempt for polling; confirmed payments also get the paid_session cookie."""
    response.headers.update(NO_CACHE_HEADERS)
    if not sessionId:
        raise BadRequestError("sessionId required")
    attempt = await payments_service.get_status(sessionId)
    log.info("mpesa_status", session_id=sessionId, status=attempt.status)
    if payments_service.is_confirmed(attempt):
        response.set_cookie(
            key=PAID_SESSION_COOKIE_NAME,
            value=create_paid_session_cookie(sessionId),
            max_age=get_settings().paid_session_max_age_seconds,
            httponly=True,
            secure=True,
            samesite="strict",
            path="/",
        )
    return {
        "success": True,
        "status": attempt.status,
        "mpesa_code": attempt.gateway_receipt_code,
        "phone_number": attempt.phone,
        "amount": attempt.amount,
    }


@router.get("/access")
async def paid_access(request: Request, response: Response, sessionId: str = Query("")):
    """Check the paid_session credential for a session; falls back to the ledger."""
    response.headers.update(NO_CACHE_HEADERS)
    if not sessionId:
        raise BadRequestError("sessionId required")
    cookie = request.cookies.get(PAID_SESSION_COOKIE_NAME)
    if cookie and load_paid_session_cookie(cookie, sessionId):
        return {"success": True, "sessionId": sessionId, "unlocked": True}
    settings = get_settings()
    if await payments_service.has_paid_access(sessionId, settings.paid_session_max_age_seconds):
        return {"success": True, "sessionId": sessionId, "unlocked": True}
    log.info("paid_access_denied", session_id=sessionId, identity=client_identity(request))
    raise ForbiddenError("Payment required")
