from datetime import datetime
from typing import Literal

import pymongo
from beanie import Document, Indexed
from pydantic import Field

PaymentStatus = Literal["pending", "success", "failed"]

PENDING: PaymentStatus = "pending"
SUCCESS: PaymentStatus = "success"
FAILED: PaymentStatus = "failed"
TERMINAL_STATUSES = (SUCCESS, FAILED)


class PaymentAttempt(Document):
    """One STK push charge request. pending -> success | failed, written once by the callback."""

    correlation_id: Indexed(str, unique=True)  # checkout_id|session_id|account_reference
    checkout_request_id: Indexed(str, unique=True)  # echoed back by the callback
    merchant_request_id: str | None = None
    session_id: str | None = None  # None on rows written by older code paths
    account_reference: str | None = None  # "<prefix>-<session_id>", secondary status lookup
    user_id: str | None = None
    method: str = "mpesa"
    amount: int
    phone: str
    status: PaymentStatus = PENDING
    gateway_receipt_code: str | None = None  # set iff status == success
    result_code: int | None = None
    result_desc: str | None = None
    transaction_date: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "payments"
        indexes = [
            [("session_id", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)],
            [("account_reference", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)],
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
