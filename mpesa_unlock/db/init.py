import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from mpesa_unlock.core.config import get_settings
from mpesa_unlock.models.audit_log import AuditLog
from mpesa_unlock.models.payment_attempt import PaymentAttempt
from mpesa_unlock.models.purchase_session import PurchaseSession

DOCUMENT_MODELS = [
    PaymentAttempt,
    PurchaseSession,
    AuditLog,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(database=None) -> None:
    """Register document models. Pass `database` to bind to an existing (e.g. in-memory) database."""
    if database is None:
        settings = get_settings()
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
        database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
