"""Shared FastAPI dependencies."""

from typing import AsyncIterator

from fastapi import Depends, Request

from mpesa_unlock.core.security import CSRF_COOKIE_NAME, CSRF_HEADER_NAME, verify_csrf
from mpesa_unlock.services.gateway import MpesaGateway
from mpesa_unlock.services.rate_limit import RateLimiter, client_identity, get_rate_limiter


async def get_gateway() -> AsyncIterator[MpesaGateway]:
    """Dependency: Daraja client for one request, closed afterwards."""
    gateway = MpesaGateway()
    try:
        yield gateway
    finally:
        await gateway.aclose()


async def require_configured_gateway(gateway: MpesaGateway = Depends(get_gateway)) -> MpesaGateway:
    gateway.ensure_configured()
    return gateway


async def enforce_rate_limit(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    """Dependency: count this initiation attempt against the caller's window."""
    await limiter.hit(client_identity(request))


async def require_csrf(request: Request) -> None:
    verify_csrf(request.headers.get(CSRF_HEADER_NAME), request.cookies.get(CSRF_COOKIE_NAME))
