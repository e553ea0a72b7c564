from mpesa_unlock.models.audit_log import AuditLog
from mpesa_unlock.models.payment_attempt import PaymentAttempt
from mpesa_unlock.models.purchase_session import PurchaseSession

__all__ = [
    "AuditLog",
    "PaymentAttempt",
    "PurchaseSession",
]
