"""Database models for Payment Result Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from checkout_common.database import Base


class PendingCheckStatus(str, Enum):
    """Lifecycle of a watchlist entry."""
    WATCHING = "watching"
    RESOLVED = "resolved"
    REVERTED = "reverted"


class PendingCheck(Base):
    """Transaction the client believes is still pending at the gateway."""

    __tablename__ = "pending_checks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    transaction_id = Column(String(100), nullable=False, unique=True, index=True)
    page_request_id = Column(String(255), nullable=True)
    user_id = Column(String(100), nullable=True)

    status = Column(String(20), default=PendingCheckStatus.WATCHING.value, nullable=False, index=True)
    last_known_status = Column(String(20), default="pending", nullable=False)

    check_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_checked_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_pending_checks_status_created", "status", "created_at"),
    )
