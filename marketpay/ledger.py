# marketpay/ledger.py
"""
Ledger queries shared by the payout sweep and the estimator.

A purchase entry is owed to its seller through a sweep when it is
un-batched, was not already paid by a real-time transfer, and is either
``completed`` or ``pending`` (a real-time transfer that failed).
``processing`` rows are claimed by someone (a settlement transfer in
flight, or a sweep) and are only selected again once the claim is older
than the stale window, i.e. the claimer died before finishing.

What a seller is owed for an entry is its net amount minus any refund
recorded against the order while the entry was still unpaid.
"""
from datetime import datetime
from typing import Dict, Iterable, List, NamedTuple, Optional
from uuid import UUID

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.orm import Session

from marketpay.models import (
    EntryStatus, EntryType, LedgerEntry, PaymentMethod, SellerProfile, now_utc
)

AWAITING_PAYOUT = (EntryStatus.COMPLETED, EntryStatus.PENDING)


class SellerBalance(NamedTuple):
    seller_id: UUID
    amount_cents: int
    entry_count: int
    destination: str | None


class ClaimedEntry(NamedTuple):
    id: UUID
    order_id: UUID | None
    net_amount_cents: int
    payable_cents: int


def eligible_for_payout(cutoff: datetime, method: PaymentMethod | None = None,
                        stale_before: Optional[datetime] = None):
    awaiting = LedgerEntry.status.in_(AWAITING_PAYOUT)
    if stale_before is not None:
        awaiting = or_(
            awaiting,
            and_(
                LedgerEntry.status == EntryStatus.PROCESSING,
                LedgerEntry.processed_at <= stale_before,
            ),
        )
    clauses = [
        LedgerEntry.type == EntryType.PURCHASE,
        awaiting,
        LedgerEntry.payout_batch_id.is_(None),
        LedgerEntry.processor_transfer_id.is_(None),
        LedgerEntry.created_at <= cutoff,
    ]
    if method is not None:
        clauses.append(LedgerEntry.payment_method == method)
    return and_(*clauses)


def _refunds_by_order():
    return (
        select(
            LedgerEntry.order_id.label("order_id"),
            func.sum(LedgerEntry.amount_cents).label("refunded_cents"),
        )
        .where(LedgerEntry.type == EntryType.REFUND)
        .group_by(LedgerEntry.order_id)
        .subquery("refunds")
    )


def _payable(refunds):
    remaining = LedgerEntry.net_amount_cents - func.coalesce(refunds.c.refunded_cents, 0)
    return case((remaining > 0, remaining), else_=0)


def payable_cents(net_amount_cents: int, refunded_cents: int) -> int:
    return max(0, net_amount_cents - refunded_cents)


def eligible_balances(
    db: Session,
    method: PaymentMethod,
    cutoff: datetime,
    min_cents: int,
    stale_before: Optional[datetime] = None,
) -> List[SellerBalance]:
    """Per-seller eligible totals for one method, dropping sellers below min_cents."""
    if method == PaymentMethod.STRIPE:
        destination = SellerProfile.processor_account_id
    else:
        destination = SellerProfile.processor_payout_email

    refunds = _refunds_by_order()
    total = func.sum(_payable(refunds))
    rows = db.execute(
        select(
            LedgerEntry.to_user_id,
            total.label("amount_cents"),
            func.count(LedgerEntry.id).label("entry_count"),
            destination.label("destination"),
        )
        .join(SellerProfile, SellerProfile.user_id == LedgerEntry.to_user_id)
        .outerjoin(refunds, refunds.c.order_id == LedgerEntry.order_id)
        .where(eligible_for_payout(cutoff, method, stale_before), destination.is_not(None))
        .group_by(LedgerEntry.to_user_id, destination)
        .having(total >= min_cents)
        .order_by(LedgerEntry.to_user_id)
    ).all()
    return [SellerBalance(r.to_user_id, int(r.amount_cents), int(r.entry_count), r.destination) for r in rows]


def refunded_by_order(db: Session, order_ids: Iterable[UUID]) -> Dict[UUID, int]:
    order_ids = [o for o in order_ids if o is not None]
    if not order_ids:
        return {}
    rows = db.execute(
        select(LedgerEntry.order_id, func.sum(LedgerEntry.amount_cents))
        .where(LedgerEntry.type == EntryType.REFUND, LedgerEntry.order_id.in_(order_ids))
        .group_by(LedgerEntry.order_id)
    ).all()
    return {order_id: int(total) for order_id, total in rows}


def claim_seller_entries(
    db: Session,
    seller_id: UUID,
    method: PaymentMethod,
    cutoff: datetime,
    batch_id: UUID | None = None,
    stale_before: Optional[datetime] = None,
) -> List[ClaimedEntry]:
    """
    Atomically claim a seller's eligible rows and return exactly the rows
    this call claimed, each with what is still payable after refunds.
    Rows move to ``processing``; with ``batch_id`` they are also stamped
    with the batch (a permanent claim). Caller commits.
    """
    values = {"status": EntryStatus.PROCESSING, "processed_at": now_utc()}
    if batch_id is not None:
        values["payout_batch_id"] = batch_id

    result = db.execute(
        update(LedgerEntry)
        .where(eligible_for_payout(cutoff, method, stale_before), LedgerEntry.to_user_id == seller_id)
        .values(**values)
        .returning(LedgerEntry.id, LedgerEntry.order_id, LedgerEntry.net_amount_cents)
        .execution_options(synchronize_session=False)
    )
    rows = result.all()
    refunded = refunded_by_order(db, [r.order_id for r in rows])
    return [
        ClaimedEntry(
            r.id, r.order_id, int(r.net_amount_cents),
            payable_cents(int(r.net_amount_cents), refunded.get(r.order_id, 0)),
        )
        for r in rows
    ]


def seller_eligible_total(db: Session, seller_id: UUID, cutoff: datetime) -> int:
    refunds = _refunds_by_order()
    total = db.execute(
        select(func.coalesce(func.sum(_payable(refunds)), 0))
        .select_from(LedgerEntry)
        .outerjoin(refunds, refunds.c.order_id == LedgerEntry.order_id)
        .where(eligible_for_payout(cutoff), LedgerEntry.to_user_id == seller_id)
    ).scalar_one()
    return int(total or 0)


def stuck_purchase_entries(db: Session, stale_before: datetime) -> List[LedgerEntry]:
    """Purchase rows claimed (``processing``) before stale_before and never finished."""
    return list(
        db.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.type == EntryType.PURCHASE,
                LedgerEntry.status == EntryStatus.PROCESSING,
                LedgerEntry.payout_batch_id.is_(None),
                LedgerEntry.processor_transfer_id.is_(None),
                LedgerEntry.processed_at <= stale_before,
            )
            .order_by(LedgerEntry.processed_at)
        ).scalars().all()
    )


def order_entries(db: Session, order_id: UUID) -> List[LedgerEntry]:
    return list(
        db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.order_id == order_id)
            .order_by(LedgerEntry.created_at)
        ).scalars().all()
    )
