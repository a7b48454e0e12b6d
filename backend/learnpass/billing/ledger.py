"""
Revenue ledger: append-only, idempotent financial events.

record() is the only writer. The (source, external_id) pair is the
idempotency key: an existence check runs first, and a concurrent duplicate
that trips the unique constraint is rolled back to a savepoint and reported
as a no-op. Rows are never updated; refunds are new rows whose net
cancels the original when summed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from learnpass.models.base import utcnow
from learnpass.models.revenue_ledger import LedgerStatus, ProductType, RevenueLedgerEntry
from learnpass.models.subscription_record import PaymentSource

logger = logging.getLogger(__name__)


# Store take rate for in-app purchases
MOBILE_FEE_RATE = Decimal("0.15")

# Card processing: 2.9% + 30c
CARD_FEE_RATE = Decimal("0.029")
CARD_FEE_FIXED_CENTS = 30

ORIGINAL_SCAN_LIMIT = 500

PLATFORM_BY_SOURCE = {
    PaymentSource.STRIPE.value: "web",
    PaymentSource.APPLE.value: "ios",
    PaymentSource.GOOGLE.value: "android",
}


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def estimate_fee(source: str, amount_cents: int) -> int:
    """Fee estimate used when the provider does not report one."""
    if amount_cents <= 0:
        return 0
    if source in (PaymentSource.APPLE.value, PaymentSource.GOOGLE.value):
        return _round_cents(Decimal(amount_cents) * MOBILE_FEE_RATE)
    if source == PaymentSource.STRIPE.value:
        return _round_cents(Decimal(amount_cents) * CARD_FEE_RATE) + CARD_FEE_FIXED_CENTS
    return 0


@dataclass
class LedgerPayload:
    """Everything about an entry except its idempotency key."""

    user_id: str
    product_type: str
    status: str
    amount_cents: int
    fee_cents: int
    net_cents: int
    occurred_at: datetime
    currency: str = "USD"
    plan: Optional[str] = None
    platform: str = "unknown"
    subscription_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class LedgerRecordResult:
    inserted: bool
    entry: Optional[RevenueLedgerEntry]


@dataclass
class LedgerSummary:
    """Aggregated ledger figures for a half-open time window."""

    start: datetime
    end: datetime
    gross_cents: int = 0
    refunds_cents: int = 0
    fees_cents: int = 0
    net_cents: int = 0
    entry_count: int = 0
    refund_count: int = 0
    failed_count: int = 0

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "gross_cents": self.gross_cents,
            "refunds_cents": self.refunds_cents,
            "fees_cents": self.fees_cents,
            "net_cents": self.net_cents,
            "entry_count": self.entry_count,
            "refund_count": self.refund_count,
            "failed_count": self.failed_count,
        }


def completed_payload(
    source: str,
    user_id: str,
    amount_cents: int,
    occurred_at: datetime,
    product_type: str = ProductType.SUBSCRIPTION.value,
    plan: Optional[str] = None,
    fee_cents: Optional[int] = None,
    currency: str = "USD",
    subscription_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> LedgerPayload:
    """Build a completed entry; net is always amount minus fee."""
    if amount_cents < 0:
        raise ValueError("Completed entries cannot have a negative amount")
    fee = fee_cents if fee_cents is not None else estimate_fee(source, amount_cents)
    meta = dict(metadata or {})
    meta["fee_estimated"] = fee_cents is None
    return LedgerPayload(
        user_id=user_id,
        product_type=product_type,
        status=LedgerStatus.COMPLETED.value,
        amount_cents=amount_cents,
        fee_cents=fee,
        net_cents=amount_cents - fee,
        occurred_at=occurred_at,
        currency=currency.upper(),
        plan=plan,
        platform=PLATFORM_BY_SOURCE.get(source, "unknown"),
        subscription_id=subscription_id,
        metadata=meta,
    )


def failed_payload(
    source: str,
    user_id: str,
    amount_cents: int,
    occurred_at: datetime,
    product_type: str = ProductType.SUBSCRIPTION.value,
    plan: Optional[str] = None,
    currency: str = "USD",
    subscription_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> LedgerPayload:
    """A failed charge attempt: amount kept for reporting, no fee, no net."""
    return LedgerPayload(
        user_id=user_id,
        product_type=product_type,
        status=LedgerStatus.FAILED.value,
        amount_cents=amount_cents,
        fee_cents=0,
        net_cents=0,
        occurred_at=occurred_at,
        currency=currency.upper(),
        plan=plan,
        platform=PLATFORM_BY_SOURCE.get(source, "unknown"),
        subscription_id=subscription_id,
        metadata=dict(metadata or {}),
    )


def refund_payload(
    source: str,
    user_id: str,
    refund_amount_cents: int,
    occurred_at: datetime,
    original: Optional[RevenueLedgerEntry] = None,
    refund_of: Optional[str] = None,
    currency: str = "USD",
    metadata: Optional[dict] = None,
) -> LedgerPayload:
    """
    Build a refund entry that offsets (part of) an original entry.

    The refunded share of the original fee is reversed too, so a full
    refund of a completed entry sums to zero net. Without a linked original
    the fee share is unknown and the whole amount counts against net.
    """
    if refund_amount_cents <= 0:
        raise ValueError("Refund amount must be positive")

    fee_share = 0
    product_type = ProductType.UNKNOWN.value
    plan = None
    subscription_id = None
    if original is not None:
        product_type = original.product_type
        plan = original.plan
        subscription_id = original.subscription_id
        currency = original.currency
        if original.amount_cents > 0:
            ratio = Decimal(min(refund_amount_cents, original.amount_cents)) / Decimal(original.amount_cents)
            fee_share = _round_cents(Decimal(original.fee_cents) * ratio)
        refund_of = original.external_id

    amount = -refund_amount_cents
    fee = -fee_share
    meta = dict(metadata or {})
    meta["refund_of"] = refund_of
    return LedgerPayload(
        user_id=user_id,
        product_type=product_type,
        status=LedgerStatus.REFUNDED.value,
        amount_cents=amount,
        fee_cents=fee,
        net_cents=amount - fee,
        occurred_at=occurred_at,
        currency=currency.upper(),
        plan=plan,
        platform=PLATFORM_BY_SOURCE.get(source, "unknown"),
        subscription_id=subscription_id,
        metadata=meta,
    )


class RevenueLedger:
    """Idempotent writer and read-side aggregation over revenue_ledger."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def find(self, source: str, external_id: str) -> Optional[RevenueLedgerEntry]:
        return self.db.query(RevenueLedgerEntry).filter(
            RevenueLedgerEntry.source == source,
            RevenueLedgerEntry.external_id == external_id,
        ).first()

    def record(self, source: str, external_id: str, payload: LedgerPayload) -> LedgerRecordResult:
        """
        Insert one entry unless (source, external_id) already exists.

        The insert is flushed inside a savepoint; the caller owns the
        outer commit.
        """
        if not external_id:
            raise ValueError("external_id is required for ledger entries")

        existing = self.find(source, external_id)
        if existing is not None:
            logger.info("Ledger entry already recorded, skipping", extra={
                "source": source,
                "external_id": external_id,
                "user_id": payload.user_id,
            })
            return LedgerRecordResult(inserted=False, entry=existing)

        entry = RevenueLedgerEntry(
            user_id=payload.user_id,
            source=source,
            platform=payload.platform,
            product_type=payload.product_type,
            plan=payload.plan,
            status=payload.status,
            amount_cents=payload.amount_cents,
            fee_cents=payload.fee_cents,
            net_cents=payload.net_cents,
            currency=payload.currency,
            external_id=external_id,
            subscription_id=payload.subscription_id,
            occurred_at=payload.occurred_at,
            extra_metadata=payload.metadata or None,
        )

        try:
            with self.db.begin_nested():
                self.db.add(entry)
                self.db.flush()
        except IntegrityError:
            # Lost a race with a concurrent delivery of the same event
            logger.info("Concurrent duplicate ledger entry, skipping", extra={
                "source": source,
                "external_id": external_id,
                "user_id": payload.user_id,
            })
            return LedgerRecordResult(inserted=False, entry=self.find(source, external_id))

        logger.info("Ledger entry recorded", extra={
            "source": source,
            "external_id": external_id,
            "user_id": payload.user_id,
            "status": payload.status,
            "net_cents": payload.net_cents,
        })
        return LedgerRecordResult(inserted=True, entry=entry)

    def find_original(
        self,
        source: str,
        external_ids: Iterable[Optional[str]],
        user_id: Optional[str] = None,
    ) -> Optional[RevenueLedgerEntry]:
        """
        Locate the completed entry a refund refers to.

        Tries the candidate ids as external ids first, then the payment
        references kept in entry metadata (the user's entries when known,
        otherwise the most recent entries of the source).
        """
        candidates = [c for c in external_ids if c]
        if not candidates:
            return None

        entry = self.db.query(RevenueLedgerEntry).filter(
            RevenueLedgerEntry.source == source,
            RevenueLedgerEntry.status == LedgerStatus.COMPLETED.value,
            RevenueLedgerEntry.external_id.in_(candidates),
        ).first()
        if entry is not None:
            return entry

        wanted = set(candidates)
        query = self.db.query(RevenueLedgerEntry).filter(
            RevenueLedgerEntry.source == source,
            RevenueLedgerEntry.status == LedgerStatus.COMPLETED.value,
        )
        if user_id:
            query = query.filter(RevenueLedgerEntry.user_id == user_id)
        rows = query.order_by(RevenueLedgerEntry.occurred_at.desc()).limit(ORIGINAL_SCAN_LIMIT).all()
        for row in rows:
            meta = row.extra_metadata or {}
            refs = {meta.get("payment_intent_id"), meta.get("charge_id"), meta.get("invoice_id")}
            if refs & wanted:
                return row
        return None

    def entries_for_user(self, user_id: str) -> list[RevenueLedgerEntry]:
        return self.db.query(RevenueLedgerEntry).filter(
            RevenueLedgerEntry.user_id == user_id,
        ).order_by(RevenueLedgerEntry.occurred_at.asc()).all()

    def summarize(self, start: datetime, end: datetime) -> LedgerSummary:
        """Aggregate entries with start <= occurred_at < end."""
        rows = self.db.query(
            RevenueLedgerEntry.status,
            func.count(RevenueLedgerEntry.id),
            func.coalesce(func.sum(RevenueLedgerEntry.amount_cents), 0),
            func.coalesce(func.sum(RevenueLedgerEntry.fee_cents), 0),
            func.coalesce(func.sum(RevenueLedgerEntry.net_cents), 0),
        ).filter(
            RevenueLedgerEntry.occurred_at >= start,
            RevenueLedgerEntry.occurred_at < end,
        ).group_by(RevenueLedgerEntry.status).all()

        summary = LedgerSummary(start=start, end=end)
        for status, count, amount, fee, net in rows:
            summary.entry_count += count
            if status == LedgerStatus.COMPLETED.value:
                summary.gross_cents += int(amount)
            elif status == LedgerStatus.REFUNDED.value:
                summary.refunds_cents += -int(amount)
                summary.refund_count += count
            elif status == LedgerStatus.FAILED.value:
                summary.failed_count += count
                continue
            else:
                continue
            summary.fees_cents += int(fee)
            summary.net_cents += int(net)
        return summary

    def compare_periods(self, end: Optional[datetime] = None, days: int = 30) -> dict:
        """Current window vs the window of equal length right before it."""
        if days <= 0:
            raise ValueError("days must be positive")
        end = end or utcnow()
        window = timedelta(days=days)
        current = self.summarize(end - window, end)
        previous = self.summarize(end - 2 * window, end - window)

        def _change(now_value: int, before_value: int) -> Optional[float]:
            if before_value == 0:
                return None
            return round((now_value - before_value) / abs(before_value) * 100, 2)

        return {
            "current": current.to_dict(),
            "previous": previous.to_dict(),
            "change_pct": {
                "gross": _change(current.gross_cents, previous.gross_cents),
                "net": _change(current.net_cents, previous.net_cents),
                "refunds": _change(current.refunds_cents, previous.refunds_cents),
            },
        }
