import hashlib
import hmac
import ipaddress
import secrets

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from mpesa_unlock.core.config import get_settings
from mpesa_unlock.core.exceptions import ForbiddenError

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"
PAID_SESSION_COOKIE_NAME = "paid_session"


def _serializer(secret: str, salt: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(
        secret,
        salt=salt,
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def get_csrf_serializer() -> URLSafeTimedSerializer:
    return _serializer(get_settings().secret_key, "mpesa-unlock-csrf")


def get_paid_session_serializer() -> URLSafeTimedSerializer:
    return _serializer(get_settings().paid_session_secret, "mpesa-unlock-paid-session")


# CSRF: double-submit cookie. The token is also signed so stale pages expire server-side.
def issue_csrf_token() -> str:
    return get_csrf_serializer().dumps(secrets.token_hex(16))


def verify_csrf(header_value: str | None, cookie_value: str | None) -> None:
    """Raise ForbiddenError unless header and cookie are present, identical and validly signed."""
    if not header_value or not cookie_value:
        raise ForbiddenError("CSRF token invalid")
    if not hmac.compare_digest(header_value.encode(), cookie_value.encode()):
        raise ForbiddenError("CSRF token invalid")
    try:
        get_csrf_serializer().loads(cookie_value, max_age=get_settings().csrf_max_age_seconds)
    except (BadSignature, SignatureExpired):
        raise ForbiddenError("CSRF token invalid")


# Paid access: HMAC over the session id, checked without touching the ledger.
def create_paid_session_cookie(session_id: str) -> str:
    return get_paid_session_serializer().dumps({"sid": session_id})


def load_paid_session_cookie(cookie_value: str, session_id: str) -> bool:
    try:
        payload = get_paid_session_serializer().loads(
            cookie_value,
            max_age=get_settings().paid_session_max_age_seconds,
        )
    except (BadSignature, SignatureExpired):
        return False
    return isinstance(payload, dict) and hmac.compare_digest(str(payload.get("sid", "")), session_id)


def verify_callback_source(token: str | None, client_ip: str | None) -> None:
    """Optional webhook hardening: shared URL token and/or source IP allowlist."""
    settings = get_settings()
    expected = settings.mpesa_callback_token
    if expected and not hmac.compare_digest((token or "").encode(), expected.encode()):
        raise ForbiddenError("Callback not authorised")
    allowed = settings.mpesa_callback_allowed_ips
    if allowed and not _ip_allowed(client_ip, allowed):
        raise ForbiddenError("Callback not authorised")


def _ip_allowed(client_ip: str | None, allowed: list[str]) -> bool:
    if not client_ip:
        return False
    try:
        ip = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowed:
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False
