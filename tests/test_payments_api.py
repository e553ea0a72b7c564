import pytest

from mpesa_unlock.core.config import Settings, gateway_config, get_settings
from mpesa_unlock.deps import get_gateway
from mpesa_unlock.models import PaymentAttempt
from conftest import SESSION_ID, csrf_headers, stk_callback

INITIATE = "/v1/payments/mpesa/initiate"
CALLBACK = "/v1/payments/mpesa/callback"
STATUS = "/v1/payments/mpesa/status"
ACCESS = "/v1/payments/access"


async def _initiate(client, phone="0727921038", session_id=SESSION_ID):
    headers = await csrf_headers(client)
    return await client.post(INITIATE, json={"sessionId": session_id, "phoneNumber": phone}, headers=headers)


async def test_csrf_endpoint_sets_cookie(client):
    r = await client.get("/v1/payments/csrf")
    assert r.status_code == 200
    token = r.json()["token"]
    assert client.cookies.get("csrf_token") == token
    set_cookie = r.headers["set-cookie"].lower()
    assert "secure" in set_cookie
    assert "samesite=strict" in set_cookie
    assert "httponly" not in set_cookie
    assert r.headers["cache-control"].startswith("no-store")


async def test_initiate_success(client, daraja):
    daraja.checkout_ids = ["ws_1"]
    r = await _initiate(client)
    assert r.status_code == 200
    assert r.json() == {"success": True, "checkoutRequestID": "ws_1", "amount": 50}


async def test_initiate_without_csrf_forbidden(client, daraja):
    r = await client.post(INITIATE, json={"sessionId": SESSION_ID, "phoneNumber": "0727921038"})
    assert r.status_code == 403
    assert r.json()["code"] == "FORBIDDEN"
    assert daraja.stk_calls == 0


async def test_initiate_with_mismatched_csrf_forbidden(client, daraja):
    await client.get("/v1/payments/csrf")
    r = await client.post(
        INITIATE,
        json={"sessionId": SESSION_ID, "phoneNumber": "0727921038"},
        headers={"X-CSRF-Token": "something-else"},
    )
    assert r.status_code == 403
    assert daraja.stk_calls == 0


async def test_initiate_invalid_phone(client, daraja):
    r = await _initiate(client, phone="0812345678")
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["code"] == "INVALID_PHONE"
    assert daraja.stk_calls == 0


async def test_initiate_missing_session(client):
    headers = await csrf_headers(client)
    r = await client.post(INITIATE, json={"phoneNumber": "0727921038"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["error"] == "sessionId required"


async def test_initiate_rate_limited_after_five_attempts(client, daraja):
    for _ in range(5):
        r = await _initiate(client, phone="0800000000")
        assert r.status_code == 400
    r = await _initiate(client)
    assert r.status_code == 429
    assert r.json()["error"] == "Too many attempts. Try later."
    assert daraja.stk_calls == 0


async def test_rate_limit_is_per_client(client):
    for _ in range(5):
        await _initiate(client, phone="0800000000")
    headers = await csrf_headers(client)
    headers["X-Forwarded-For"] = "41.90.10.20"
    r = await client.post(INITIATE, json={"sessionId": SESSION_ID, "phoneNumber": "0727921038"}, headers=headers)
    assert r.status_code == 200


async def test_initiate_unconfigured_gateway(app, client, daraja):
    cfg = gateway_config(Settings(mpesa_consumer_key=""))
    app.dependency_overrides[get_gateway] = lambda: daraja.gateway(cfg)
    r = await _initiate(client)
    assert r.status_code == 500
    assert r.json()["code"] == "CONFIGURATION"
    assert daraja.requests == []


async def test_initiate_gateway_rejection(client, daraja):
    daraja.stk_response = (400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})
    r = await _initiate(client)
    assert r.status_code == 502
    assert r.json()["error"] == "Bad Request - Invalid Amount"
    assert await PaymentAttempt.find_all().count() == 0


async def test_initiate_gateway_unreachable(client, daraja):
    daraja.stk_transport_failures = 2
    r = await _initiate(client)
    assert r.status_code == 502
    assert r.json()["code"] == "GATEWAY_UNAVAILABLE"


async def test_status_not_found_is_not_cacheable(client):
    r = await client.get(STATUS, params={"sessionId": SESSION_ID})
    assert r.status_code == 404
    assert r.json()["error"] == "No payment found"
    assert r.headers["cache-control"] == "no-store"


async def test_status_requires_session(client):
    r = await client.get(STATUS)
    assert r.status_code == 400


async def test_pending_status_has_no_cookie(client, daraja):
    await _initiate(client)
    r = await client.get(STATUS, params={"sessionId": SESSION_ID})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "pending"
    assert body["mpesa_code"] is None
    assert "no-store" in r.headers["cache-control"]
    assert r.headers["pragma"] == "no-cache"
    assert "paid_session" not in r.cookies


async def test_full_payment_flow_unlocks_access(client, daraja):
    daraja.checkout_ids = ["ws_1"]
    await _initiate(client)

    r = await client.post(CALLBACK, json=stk_callback("ws_1", receipt="ABC123"))
    assert r.status_code == 200
    assert r.json()["ResultCode"] == 0

    r = await client.get(STATUS, params={"sessionId": SESSION_ID})
    body = r.json()
    assert body["status"] == "success"
    assert body["mpesa_code"] == "ABC123"
    assert body["phone_number"] == "254727921038"
    assert body["amount"] == 50
    set_cookie = r.headers["set-cookie"].lower()
    assert "paid_session=" in set_cookie
    assert "httponly" in set_cookie
    assert "samesite=strict" in set_cookie

    r = await client.get(ACCESS, params={"sessionId": SESSION_ID})
    assert r.status_code == 200
    assert r.json()["unlocked"] is True


async def test_failed_payment_gets_no_cookie(client, daraja):
    daraja.checkout_ids = ["ws_1"]
    await _initiate(client)
    await client.post(CALLBACK, json=stk_callback("ws_1", result_code=1032))
    r = await client.get(STATUS, params={"sessionId": SESSION_ID})
    assert r.json()["status"] == "failed"
    assert "paid_session" not in r.cookies


async def test_access_denied_without_payment(client):
    r = await client.get(ACCESS, params={"sessionId": SESSION_ID})
    assert r.status_code == 403
    assert r.json()["error"] == "Payment required"


async def test_callback_for_unknown_checkout_is_acknowledged(client):
    r = await client.post(CALLBACK, json=stk_callback("ws_nobody"))
    assert r.status_code == 200
    assert await PaymentAttempt.find_all().count() == 0


async def test_callback_malformed_json(client):
    r = await client.post(CALLBACK, content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    r = await client.post(CALLBACK, json={"Body": {}})
    assert r.status_code == 400


async def test_callback_token_enforced(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "mpesa_callback_token", "hook-secret")
    r = await client.post(CALLBACK, json=stk_callback("ws_1"))
    assert r.status_code == 403
    r = await client.post(CALLBACK, params={"token": "hook-secret"}, json=stk_callback("ws_1"))
    assert r.status_code == 200


@pytest.mark.parametrize("forwarded,expected", [("196.201.214.10", 200), ("8.8.8.8", 403)])
async def test_callback_ip_allowlist(client, monkeypatch, forwarded, expected):
    monkeypatch.setattr(get_settings(), "mpesa_callback_allowed_ips_raw", "196.201.214.0/24")
    r = await client.post(CALLBACK, json=stk_callback("ws_1"), headers={"X-Forwarded-For": forwarded})
    assert r.status_code == expected


async def test_error_body_carries_request_id(client):
    r = await client.get(STATUS, params={"sessionId": SESSION_ID}, headers={"X-Request-ID": "req-123"})
    assert r.json()["request_id"] == "req-123"
    assert r.headers["x-request-id"] == "req-123"
