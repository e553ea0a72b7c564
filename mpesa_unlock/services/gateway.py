"""Safaricom Daraja client: OAuth token + STK push, one-shot retry on transient failures."""

import asyncio
import base64
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable

import httpx

from mpesa_unlock.core.config import GatewayConfig, gateway_config
from mpesa_unlock.core.exceptions import ConfigurationError, GatewayRejectedError, GatewayTransientError
from mpesa_unlock.core.logging import get_logger
from mpesa_unlock.core.retry import retry_async

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

# One initial call plus exactly one retry, for each of the two calls.
GATEWAY_ATTEMPTS = 2
GATEWAY_CALLS = 2  # token, then charge

log = get_logger(__name__)


def daraja_timestamp(now: datetime | None = None) -> str:
    """YYYYMMDDHHmmss, the only format Daraja accepts in the password."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def generate_password(short_code: str, pass_key: str, timestamp: str) -> str:
    """base64(ShortCode + PassKey + Timestamp)."""
    return base64.b64encode(f"{short_code}{pass_key}{timestamp}".encode()).decode("utf-8")


@dataclass(frozen=True)
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: str | None
    response_description: str | None
    customer_message: str | None


class MpesaGateway:
    """HTTP client wrapper for the Daraja API."""

    def __init__(
        self,
        config: GatewayConfig | None = None,
        client: httpx.AsyncClient | None = None,
        clock=datetime.now,
    ) -> None:
        self.config = config or gateway_config()
        self._client = client
        self._owns_client = client is None
        self._clock = clock

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout_seconds),
            )
        return self._client

    def ensure_configured(self) -> None:
        """Missing credentials or a non-https callback URL make every charge impossible."""
        if self.config.missing:
            raise ConfigurationError(f"Payment not configured: missing {', '.join(self.config.missing)}")
        if not self.config.is_callback_valid:
            raise ConfigurationError("Invalid MPESA_CALLBACK_URL: must be https")

    @property
    def max_duration_seconds(self) -> float:
        """Upper bound for stk_push: every attempt of both calls running into its deadline."""
        return GATEWAY_ATTEMPTS * GATEWAY_CALLS * self.config.timeout_seconds

    async def _bounded(self, request: Awaitable[httpx.Response]) -> httpx.Response:
        # httpx timeouts are per phase; this caps the whole call.
        try:
            return await asyncio.wait_for(request, self.config.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise GatewayTransientError("M-Pesa request timed out") from e

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _fetch_token(self) -> str:
        try:
            r = await self._bounded(self._http().get(
                TOKEN_PATH,
                params={"grant_type": "client_credentials"},
                auth=httpx.BasicAuth(self.config.consumer_key, self.config.consumer_secret),
            ))
        except httpx.HTTPError as e:
            raise GatewayTransientError("Failed to get M-Pesa token") from e
        if not r.is_success:
            raise GatewayTransientError("Failed to get M-Pesa token", details={"status_code": r.status_code})
        try:
            token = r.json().get("access_token")
        except ValueError:
            token = None
        if not token:
            raise GatewayTransientError("Failed to get M-Pesa token")
        return token

    async def get_access_token(self) -> str:
        return await retry_async(
            self._fetch_token,
            attempts=GATEWAY_ATTEMPTS,
            retry_on=(GatewayTransientError,),
            operation="mpesa_token",
        )

    def build_stk_body(
        self,
        phone: str,
        amount: int,
        account_reference: str,
        description: str,
        timestamp: str,
    ) -> dict[str, Any]:
        cfg = self.config
        return {
            "BusinessShortCode": cfg.shortcode,
            "Password": generate_password(cfg.shortcode, cfg.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": cfg.transaction_type,
            "Amount": amount,
            "PartyA": phone,
            "PartyB": cfg.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": cfg.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

    async def _submit(self, access_token: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            r = await self._bounded(self._http().post(
                STK_PUSH_PATH,
                json=body,
                headers={"Authorization": f"Bearer {access_token}"},
            ))
        except httpx.TransportError as e:
            raise GatewayTransientError("STK push request failed") from e
        try:
            data = r.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if not r.is_success or data.get("errorCode"):
            raise GatewayRejectedError(
                data.get("errorMessage") or "STK push failed",
                details={"status_code": r.status_code, "error_code": data.get("errorCode")},
            )
        if str(data.get("ResponseCode", "0")) != "0":
            raise GatewayRejectedError(
                data.get("ResponseDescription") or "STK push failed",
                details={"response_code": data.get("ResponseCode")},
            )
        if not data.get("CheckoutRequestID"):
            raise GatewayRejectedError("STK push response missing CheckoutRequestID")
        return data

    async def stk_push(
        self,
        phone: str,
        amount: int,
        account_reference: str,
        description: str,
    ) -> StkPushResult:
        """Acquire a token, then submit the charge. Rejections are never retried."""
        self.ensure_configured()
        access_token = await self.get_access_token()
        body = self.build_stk_body(phone, amount, account_reference, description, daraja_timestamp(self._clock()))
        log.info(
            "mpesa_stk_push",
            environment=self.config.environment,
            short_code=self.config.shortcode,
            amount=amount,
            account_reference=account_reference,
        )
        data = await retry_async(
            lambda: self._submit(access_token, body),
            attempts=GATEWAY_ATTEMPTS,
            retry_on=(GatewayTransientError,),
            operation="mpesa_stk_push",
        )
        return StkPushResult(
            checkout_request_id=data["CheckoutRequestID"],
            merchant_request_id=data.get("MerchantRequestID"),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )
