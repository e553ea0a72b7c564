from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class PurchaseSession(Document):
    """Browser session / document being purchased -> owning user."""
    session_id: Indexed(str, unique=True)
    user_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "sessions"
