"""Audit log for payment attempts (abuse investigation)."""

from typing import Any

from mpesa_unlock.models.audit_log import AuditLog


async def log_event(
    user_id: str | None,
    action: str,
    target_type: str,
    target_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Append to audit_logs collection. Write-only from the payment flow."""
    await AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details or {},
    ).insert()
