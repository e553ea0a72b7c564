"""Client-side confirmation loop: CSRF -> initiate -> poll status -> paid access.

Sequential and cooperatively cancellable. It never writes to the ledger: a timeout
only means the client stopped waiting, the charge may still complete.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from mpesa_unlock.core.logging import get_logger
from mpesa_unlock.core.security import CSRF_HEADER_NAME, PAID_SESSION_COOKIE_NAME
from mpesa_unlock.services.phone import is_valid_local_phone

API_PREFIX = "/v1/payments"
POLL_INTERVAL_SECONDS = 3.0
POLL_TIMEOUT_SECONDS = 120.0
# Per-request ceiling for status and access reads.
REQUEST_TIMEOUT_SECONDS = 10.0
# Must outlast the server's initiate: every gateway attempt at its deadline plus the DB write.
INITIATE_TIMEOUT_SECONDS = 90.0

log = get_logger(__name__)


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    INVALID_PHONE = "invalid_phone"
    INVALID_INPUT = "invalid_input"
    RATE_LIMITED = "rate_limited"
    INITIATION_FAILED = "initiation_failed"
    CANCELLED = "cancelled"


# User-facing copy. Timeout must not claim the charge failed.
OUTCOME_MESSAGES = {
    OutcomeKind.SUCCEEDED: "Payment received. Your draft is unlocked.",
    OutcomeKind.FAILED: "Payment failed to capture MPESA code. Please try again.",
    OutcomeKind.TIMED_OUT: (
        "This is taking longer than expected. Check your phone for the M-Pesa prompt; "
        "you may retry once you are sure the payment did not go through."
    ),
    OutcomeKind.INVALID_PHONE: "Enter a valid Kenyan phone like 0727921038 or 0111234567",
    OutcomeKind.INVALID_INPUT: "Missing or invalid session. Reload the page and try again.",
    OutcomeKind.RATE_LIMITED: "Too many attempts. Please wait a few minutes and try again.",
    OutcomeKind.INITIATION_FAILED: "We could not start the payment. Please try again.",
    OutcomeKind.CANCELLED: "Payment check cancelled.",
}


@dataclass
class PaymentOutcome:
    kind: OutcomeKind
    message: str
    checkout_request_id: str | None = None
    mpesa_code: str | None = None
    phone_number: str | None = None
    access_token: str | None = None  # paid_session cookie value
    detail: str | None = None  # server error text, for logs

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCEEDED


def _outcome(kind: OutcomeKind, **kwargs: Any) -> PaymentOutcome:
    return PaymentOutcome(kind=kind, message=OUTCOME_MESSAGES[kind], **kwargs)


def _json(r: httpx.Response) -> dict[str, Any]:
    try:
        data = r.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class PaymentPoller:
    """Drives one payment to a user-visible outcome against the payments API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        initiate_timeout: float = INITIATE_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.interval = interval
        self.timeout = timeout
        self.request_timeout = min(request_timeout, timeout)
        self.initiate_timeout = min(initiate_timeout, timeout)
        self._sleep = sleep
        self._clock = clock
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        """Stop at the next loop check (e.g. the user navigated away)."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def _fetch_csrf(self) -> str:
        r = await self.client.get(f"{API_PREFIX}/csrf", timeout=self.request_timeout)
        r.raise_for_status()
        return _json(r).get("token", "")

    async def _initiate(self, session_id: str, phone: str) -> PaymentOutcome | str | None:
        """
        Return the checkout id, None when a charge may be in flight without one,
        or the outcome that ends the flow before polling.
        """
        try:
            token = await self._fetch_csrf()
        except httpx.HTTPError as e:
            log.warning("payment_initiate_unreachable", session_id=session_id, reason=str(e))
            return _outcome(OutcomeKind.INITIATION_FAILED, detail=str(e))
        try:
            r = await self.client.post(
                f"{API_PREFIX}/mpesa/initiate",
                json={"sessionId": session_id, "phoneNumber": phone},
                headers={CSRF_HEADER_NAME: token},
                timeout=self.initiate_timeout,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            log.warning("payment_initiate_unreachable", session_id=session_id, reason=str(e))
            return _outcome(OutcomeKind.INITIATION_FAILED, detail=str(e))
        except httpx.TimeoutException as e:
            # The request reached the server; the STK push may still go out.
            log.warning("payment_initiate_slow", session_id=session_id, reason=str(e))
            return None
        except httpx.HTTPError as e:
            log.warning("payment_initiate_unreachable", session_id=session_id, reason=str(e))
            return _outcome(OutcomeKind.INITIATION_FAILED, detail=str(e))
        data = _json(r)
        if r.is_success and data.get("success"):
            return data.get("checkoutRequestID") or None
        error = data.get("error")
        log.info("payment_initiate_rejected", session_id=session_id, status_code=r.status_code, error=error)
        if r.status_code == 409:
            # Another initiation for this session holds the lock; follow its outcome.
            return None
        if r.status_code == 429:
            return _outcome(OutcomeKind.RATE_LIMITED, detail=error)
        if r.status_code == 400:
            kind = OutcomeKind.INVALID_PHONE if data.get("code") == "INVALID_PHONE" else OutcomeKind.INVALID_INPUT
            return _outcome(kind, detail=error)
        return _outcome(OutcomeKind.INITIATION_FAILED, detail=error)

    async def _poll_status(self, session_id: str) -> dict[str, Any] | None:
        """One status read; None when it should simply be retried next tick."""
        try:
            r = await self.client.get(
                f"{API_PREFIX}/mpesa/status",
                params={"sessionId": session_id},
                headers={"Cache-Control": "no-store"},
                timeout=self.request_timeout,
            )
        except httpx.HTTPError as e:
            log.info("payment_status_unreachable", session_id=session_id, reason=str(e))
            return None
        data = _json(r)
        if not r.is_success or not data.get("success"):
            return None
        return data

    async def _confirm_access(self, session_id: str) -> str | None:
        try:
            r = await self.client.get(
                f"{API_PREFIX}/access",
                params={"sessionId": session_id},
                timeout=self.request_timeout,
            )
        except httpx.HTTPError as e:
            log.warning("payment_access_unreachable", session_id=session_id, reason=str(e))
            return None
        if not r.is_success:
            return None
        return self.client.cookies.get(PAID_SESSION_COOKIE_NAME) or ""

    async def pay(self, session_id: str, phone: str) -> PaymentOutcome:
        if not session_id:
            return _outcome(OutcomeKind.INVALID_INPUT)
        if not is_valid_local_phone(phone):
            return _outcome(OutcomeKind.INVALID_PHONE)

        started = self._clock()
        initiated = await self._initiate(session_id, phone)
        if isinstance(initiated, PaymentOutcome):
            return initiated
        checkout_id = initiated

        while self._clock() - started < self.timeout:
            if self.cancelled:
                return _outcome(OutcomeKind.CANCELLED, checkout_request_id=checkout_id)
            await self._sleep(self.interval)
            if self.cancelled:
                return _outcome(OutcomeKind.CANCELLED, checkout_request_id=checkout_id)
            data = await self._poll_status(session_id)
            if data is None:
                continue
            status = data.get("status")
            if status == "failed":
                return _outcome(OutcomeKind.FAILED, checkout_request_id=checkout_id)
            if status == "success" and data.get("mpesa_code") and data.get("phone_number"):
                access_token = await self._confirm_access(session_id)
                if access_token is None:
                    # Paid but the credential could not be confirmed yet; keep polling to re-issue it.
                    continue
                log.info("payment_confirmed", session_id=session_id, checkout_request_id=checkout_id)
                return _outcome(
                    OutcomeKind.SUCCEEDED,
                    checkout_request_id=checkout_id,
                    mpesa_code=data["mpesa_code"],
                    phone_number=data["phone_number"],
                    access_token=access_token,
                )

        log.info("payment_poll_timeout", session_id=session_id, checkout_request_id=checkout_id)
        return _outcome(OutcomeKind.TIMED_OUT, checkout_request_id=checkout_id)
