"""
Revenue ledger model.

CRITICAL: the ledger is append-only. Rows are inserted once per
(source, external_id) and never updated or deleted. Refunds are separate
rows whose amounts cancel the original when summed.
"""

import enum
import uuid

from sqlalchemy import Column, String, Integer, Index, UniqueConstraint

from learnpass.db_base import Base
from learnpass.models.base import UTCDateTime, JSONType, utcnow


class LedgerStatus(str, enum.Enum):
    """Financial status of a ledger entry."""
    COMPLETED = "completed"
    REFUNDED = "refunded"
    PENDING = "pending"
    FAILED = "failed"


class ProductType(str, enum.Enum):
    """What was purchased."""
    SUBSCRIPTION = "subscription"
    CERTIFICATION = "certification"
    EVENT = "event"
    SEATS = "seats"
    UNKNOWN = "unknown"


class RevenueLedgerEntry(Base):
    """One financial event, keyed for idempotency on (source, external_id)."""

    __tablename__ = "revenue_ledger"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    source = Column(String(50), nullable=False)
    platform = Column(String(32), nullable=False, default="unknown")
    product_type = Column(String(50), nullable=False)
    plan = Column(String(32), nullable=True)
    status = Column(String(32), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    fee_cents = Column(Integer, nullable=False, default=0)
    net_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    external_id = Column(
        String(255),
        nullable=False,
        comment="Provider transaction / invoice / refund id (idempotency key)"
    )
    subscription_id = Column(String(255), nullable=True)
    occurred_at = Column(UTCDateTime, nullable=False)
    extra_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_revenue_ledger_source_external_id"),
        Index("ix_revenue_ledger_occurred_at", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RevenueLedgerEntry(source={self.source}, external_id={self.external_id}, "
            f"status={self.status}, net_cents={self.net_cents})>"
        )
