from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class AuditLog(Document):
    user_id: str | None = None  # attempts on anonymous sessions have no owner
    action: str  # payment_attempt, payment_callback
    target_type: str
    target_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("action", 1), ("created_at", -1)],
            [("target_type", 1), ("target_id", 1)],
        ]
