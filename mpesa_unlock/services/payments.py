"""M-Pesa STK push orchestration: idempotent initiation, callback correlation, status for polling."""

import math
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator

import pymongo
from beanie import UpdateResponse
from beanie.operators import Set

from mpesa_unlock.core.audit import log_event
from mpesa_unlock.core.config import get_settings
from mpesa_unlock.core.exceptions import BadRequestError, ConflictError, NotFoundError, ValidationError
from mpesa_unlock.core.logging import get_logger
from mpesa_unlock.models.payment_attempt import FAILED, PENDING, SUCCESS, PaymentAttempt, PaymentStatus
from mpesa_unlock.models.purchase_session import PurchaseSession
from mpesa_unlock.services.gateway import MpesaGateway
from mpesa_unlock.services.phone import mask_msisdn, normalize_phone
from mpesa_unlock.services.rate_limit import RateLimitStore, get_rate_limit_store

LOCK_PREFIX = "mpesa:initiate_lock"
NEWEST_FIRST = [("created_at", pymongo.DESCENDING), ("_id", pymongo.DESCENDING)]

log = get_logger(__name__)


@dataclass(frozen=True)
class CallbackOutcome:
    checkout_request_id: str
    status: PaymentStatus
    matched: bool  # a ledger row exists for this checkout id
    applied: bool  # this delivery moved the row out of pending


def validate_session_id(session_id: Any) -> str:
    if not session_id or not isinstance(session_id, str):
        raise ValidationError("sessionId required")
    try:
        uuid.UUID(session_id.strip())
    except ValueError:
        raise ValidationError("sessionId must be a UUID")
    return session_id.strip()


def account_reference_for(session_id: str) -> str:
    return f"{get_settings().account_reference_prefix}-{session_id}"


async def find_recent_pending(session_id: str, window_seconds: int) -> PaymentAttempt | None:
    since = datetime.utcnow() - timedelta(seconds=window_seconds)
    return await PaymentAttempt.find(
        PaymentAttempt.session_id == session_id,
        PaymentAttempt.status == PENDING,
        PaymentAttempt.created_at >= since,
    ).sort(NEWEST_FIRST).first_or_none()


async def resolve_owner(session_id: str) -> str | None:
    """Session -> owning user via the identity store; anonymous sessions have none."""
    row = await PurchaseSession.find_one(PurchaseSession.session_id == session_id)
    return row.user_id if row else None


@asynccontextmanager
async def initiation_lock(session_id: str, store: RateLimitStore, ttl_seconds: int) -> AsyncIterator[None]:
    """Per-session lock so two concurrent initiations cannot both reach the gateway.

    ttl_seconds must outlast the guarded gateway call, or a second initiation could
    charge again. Release is token-checked: an expired holder never frees a newer lock.
    """
    key = f"{LOCK_PREFIX}:{session_id}"
    token = uuid.uuid4().hex
    if not await store.acquire(key, token, ttl_seconds):
        raise ConflictError("Payment initiation already in progress")
    try:
        yield
    finally:
        if not await store.release(key, token):
            log.warning("mpesa_initiate_lock_lost", session_id=session_id, ttl_seconds=ttl_seconds)


async def initiate(
    session_id: str,
    phone: str,
    gateway: MpesaGateway,
    lock_store: RateLimitStore | None = None,
) -> PaymentAttempt:
    """
    Start (or re-join) a charge for session_id.
    A pending attempt inside the idempotency window is returned as-is, without contacting the gateway.
    Gateway failures propagate and persist nothing; retrying is the caller's decision.
    """
    settings = get_settings()
    session_id = validate_session_id(session_id)
    existing = await find_recent_pending(session_id, settings.idempotency_window_seconds)
    if existing:
        log.info("mpesa_initiate_idempotent", session_id=session_id, checkout_request_id=existing.checkout_request_id)
        return existing

    msisdn = normalize_phone(phone)
    log.info("mpesa_initiate", session_id=session_id, msisdn=mask_msisdn(msisdn))

    store = lock_store if lock_store is not None else get_rate_limit_store()
    lock_ttl = math.ceil(gateway.max_duration_seconds) + settings.initiation_lock_margin_seconds
    async with initiation_lock(session_id, store, lock_ttl):
        existing = await find_recent_pending(session_id, settings.idempotency_window_seconds)
        if existing:
            return existing

        result = await gateway.stk_push(
            msisdn,
            settings.unlock_amount,
            settings.mpesa_account_reference,
            settings.mpesa_transaction_desc,
        )
        account_reference = account_reference_for(session_id)
        attempt = PaymentAttempt(
            correlation_id=f"{result.checkout_request_id}|{session_id}|{account_reference}",
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
            session_id=session_id,
            account_reference=account_reference,
            user_id=await resolve_owner(session_id),
            amount=settings.unlock_amount,
            phone=msisdn,
        )
        await attempt.insert()

    log.info("mpesa_initiated", session_id=session_id, checkout_request_id=attempt.checkout_request_id)
    await log_event(
        attempt.user_id,
        "payment_attempt",
        "payment",
        str(attempt.id),
        {
            "sessionId": session_id,
            "checkoutId": attempt.checkout_request_id,
            "amount": attempt.amount,
            "msisdn": mask_msisdn(msisdn),
        },
    )
    return attempt


def _parse_result_code(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _metadata(stk_callback: dict[str, Any]) -> dict[str, Any]:
    """Name -> Value from CallbackMetadata.Item; the gateway does not guarantee order."""
    items = (stk_callback.get("CallbackMetadata") or {}).get("Item") or []
    out: dict[str, Any] = {}
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            out[item["Name"]] = item.get("Value")
    return out


def _parse_transaction_date(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except ValueError:
        return None


async def handle_callback(payload: Any) -> CallbackOutcome:
    """
    Apply an STK callback to its pending attempt.
    Success needs ResultCode 0 and a receipt number; anything else is failed.
    Unknown or already-terminal checkout ids are logged and left untouched.
    """
    body = payload.get("Body") if isinstance(payload, dict) else None
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        raise BadRequestError("Invalid callback payload")
    checkout_id = stk.get("CheckoutRequestID")
    if not checkout_id or not isinstance(checkout_id, str):
        raise BadRequestError("Invalid callback payload")

    result_code = _parse_result_code(stk.get("ResultCode"))
    meta = _metadata(stk)
    receipt = meta.get("MpesaReceiptNumber")
    receipt = str(receipt) if receipt else None
    status: PaymentStatus = SUCCESS if result_code == 0 and receipt else FAILED

    changes: dict[str, Any] = {
        "status": status,
        "result_code": result_code,
        "result_desc": stk.get("ResultDesc"),
        "updated_at": datetime.utcnow(),
    }
    if status == SUCCESS:
        changes["gateway_receipt_code"] = receipt
        changes["transaction_date"] = _parse_transaction_date(meta.get("TransactionDate"))
        if meta.get("PhoneNumber"):
            changes["phone"] = str(meta["PhoneNumber"])

    # Conditional on pending: duplicate or late deliveries cannot revert a terminal row.
    result = await PaymentAttempt.find_one(
        PaymentAttempt.checkout_request_id == checkout_id,
        PaymentAttempt.status == PENDING,
    ).update(Set(changes), response_type=UpdateResponse.UPDATE_RESULT)

    if result is not None and result.modified_count == 1:
        log.info(
            "mpesa_callback",
            checkout_request_id=checkout_id,
            status=status,
            result_code=result_code,
            account_ref_present=bool(meta.get("AccountReference")),
        )
        await log_event(None, "payment_callback", "payment", checkout_id, {"status": status, "resultCode": result_code})
        return CallbackOutcome(checkout_id, status, matched=True, applied=True)

    existing = await PaymentAttempt.find_one(PaymentAttempt.checkout_request_id == checkout_id)
    if existing is None:
        log.warning("mpesa_callback_unmatched", checkout_request_id=checkout_id, result_code=result_code)
        return CallbackOutcome(checkout_id, status, matched=False, applied=False)
    log.info(
        "mpesa_callback_ignored",
        checkout_request_id=checkout_id,
        current_status=existing.status,
        delivered_status=status,
    )
    return CallbackOutcome(checkout_id, existing.status, matched=True, applied=False)


async def get_status(session_id: str) -> PaymentAttempt:
    """Latest attempt for the session; falls back to the account-reference key. NotFoundError if none."""
    session_id = validate_session_id(session_id)
    attempt = await PaymentAttempt.find(
        PaymentAttempt.session_id == session_id,
    ).sort(NEWEST_FIRST).first_or_none()
    if attempt is None:
        log.info("mpesa_status_fallback", session_id=session_id)
        attempt = await PaymentAttempt.find(
            PaymentAttempt.account_reference == account_reference_for(session_id),
        ).sort(NEWEST_FIRST).first_or_none()
    if attempt is None:
        raise NotFoundError("No payment found")
    return attempt


def is_confirmed(attempt: PaymentAttempt) -> bool:
    """Success with receipt and phone: the only state that unlocks the document."""
    return attempt.status == SUCCESS and bool(attempt.gateway_receipt_code) and bool(attempt.phone)


async def has_paid_access(session_id: str, within_seconds: int) -> bool:
    """Confirmed payment whose confirmation (the callback write) is younger than within_seconds."""
    try:
        attempt = await get_status(session_id)
    except NotFoundError:
        return False
    if not is_confirmed(attempt):
        return False
    return attempt.updated_at >= datetime.utcnow() - timedelta(seconds=within_seconds)
