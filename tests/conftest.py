import json
import os
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Test configuration; must be set before settings are first read.
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "mpesa_unlock_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("COOKIE_SECRET", "test-cookie-secret")
os.environ.setdefault("MPESA_CONSUMER_KEY", "test-consumer-key")
os.environ.setdefault("MPESA_CONSUMER_SECRET", "test-consumer-secret")
os.environ.setdefault("MPESA_SHORTCODE", "174379")
os.environ.setdefault("MPESA_PASSKEY", "test-passkey")
os.environ.setdefault("MPESA_CALLBACK_URL", "https://unlock.example.com/v1/payments/mpesa/callback")
os.environ.setdefault("MPESA_ENVIRONMENT", "sandbox")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

SESSION_ID = "4b7f6d3e-2a51-4c1e-9d0b-7f0e5a2c8b11"
OTHER_SESSION_ID = "9c1d2e3f-4a5b-4c6d-8e7f-0a1b2c3d4e5f"


def stk_callback(checkout_id: str, result_code=0, receipt: str | None = "ABC123", phone="254727921038", extra=None):
    """Daraja STK callback body."""
    items = []
    if receipt is not None:
        items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
    items.append({"Name": "Amount", "Value": 50})
    items.append({"Name": "TransactionDate", "Value": 20240102030405})
    if phone is not None:
        items.append({"Name": "PhoneNumber", "Value": int(phone)})
    items.extend(extra or [])
    stk = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": stk}}


class FakeDaraja:
    """Scripted Daraja sandbox behind httpx.MockTransport."""

    def __init__(self) -> None:
        self.checkout_ids: list[str] = []
        self.token_failures = 0
        self.stk_transport_failures = 0
        self.stk_response: tuple[int, dict] | None = None
        self.token_calls = 0
        self.stk_calls = 0
        self.stk_bodies: list[dict] = []
        self.requests: list[httpx.Request] = []
        self._seq = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            self.token_calls += 1
            if self.token_failures:
                self.token_failures -= 1
                return httpx.Response(503, json={"errorMessage": "Service busy"})
            return httpx.Response(200, json={"access_token": "sandbox-token", "expires_in": "3599"})
        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            self.stk_calls += 1
            if self.stk_transport_failures:
                self.stk_transport_failures -= 1
                raise httpx.ConnectError("connection reset", request=request)
            self.stk_bodies.append(json.loads(request.content))
            if self.stk_response is not None:
                status_code, body = self.stk_response
                return httpx.Response(status_code, json=body)
            self._seq += 1
            checkout_id = self.checkout_ids.pop(0) if self.checkout_ids else f"ws_CO_{self._seq}"
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"mr_{self._seq}",
                    "CheckoutRequestID": checkout_id,
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )
        return httpx.Response(404, json={"errorMessage": "Not found"})

    def gateway(self, config=None, **kwargs):
        from mpesa_unlock.core.config import gateway_config
        from mpesa_unlock.services.gateway import MpesaGateway
        cfg = config or gateway_config()
        client = httpx.AsyncClient(base_url=cfg.base_url, transport=httpx.MockTransport(self.handler))
        return MpesaGateway(cfg, client=client, **kwargs)


@pytest.fixture
def daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest_asyncio.fixture
async def db():
    """beanie on a fresh in-memory Mongo per test."""
    from mongomock_motor import AsyncMongoMockClient
    from mpesa_unlock.db.init import init_db
    database = AsyncMongoMockClient()["mpesa_unlock_test"]
    await init_db(database)
    yield database


@pytest.fixture
def rate_limiter():
    from mpesa_unlock.core.config import get_settings
    from mpesa_unlock.services.rate_limit import MemoryRateLimitStore, RateLimiter
    s = get_settings()
    return RateLimiter(MemoryRateLimitStore(), limit=s.rate_limit_attempts, window_seconds=s.rate_limit_window_seconds)


@pytest.fixture
def app(daraja, rate_limiter):
    from mpesa_unlock.deps import get_gateway
    from mpesa_unlock.main import app as fastapi_app
    from mpesa_unlock.services.rate_limit import get_rate_limiter
    fastapi_app.dependency_overrides[get_gateway] = lambda: daraja.gateway()
    fastapi_app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app, db) -> AsyncGenerator[AsyncClient, None]:
    # https: the CSRF and paid_session cookies are Secure.
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="https://test",
    ) as ac:
        yield ac


async def csrf_headers(ac: AsyncClient) -> dict[str, str]:
    r = await ac.get("/v1/payments/csrf")
    return {"X-CSRF-Token": r.json()["token"]}
