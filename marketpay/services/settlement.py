# marketpay/services/settlement.py
import logging
from decimal import Decimal, ROUND_FLOOR
from time import perf_counter
from typing import Dict, Mapping, Optional
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketpay.errors import InvalidOrderState, OrderNotFound, SellerProfileNotFound
from marketpay.ledger import AWAITING_PAYOUT
from marketpay.metrics import (
    realtime_transfers, refund_errors, refunds_total, settlement_latency,
    settlement_noops, settlements_total
)
from marketpay.models import (
    EntryStatus, EntryType, LedgerEntry, Order, OrderStatus, PaymentMethod,
    SellerProfile, now_utc
)
from marketpay.platform_settings import load_payout_config
from marketpay.processor import PaymentProcessor, processor_for
from marketpay.schemas import SettlementResult

log = logging.getLogger(__name__)

# Methods whose processor can move funds to the seller at settlement time
REALTIME_TRANSFER_METHODS = {PaymentMethod.STRIPE}

WITHHELD_AFTER_REFUND = "Order refunded before payout"


def compute_commission(amount_cents: int, rate_percent) -> int:
    """floor(amount * rate / 100) in minor units."""
    commission = Decimal(amount_cents) * Decimal(str(rate_percent)) / Decimal(100)
    return int(commission.to_integral_value(rounding=ROUND_FLOOR))


def complete_order(
    db: Session,
    order_id: UUID,
    payment_reference_id: Optional[str] = None,
    processors: Optional[Mapping[PaymentMethod, PaymentProcessor]] = None,
) -> SettlementResult:
    """
    Settle a paid order:
      - one atomic unit with the order row locked:
          * already COMPLETED -> success, no new rows
          * write PURCHASE (to seller) + COMMISSION (to platform) entries
          * mark the order COMPLETED, bump seller totals
      - after commit, best-effort real-time transfer of the net amount
        to the seller's connected account

    Expects a session with no transaction in progress. Raises OrderNotFound /
    SellerProfileNotFound; database errors propagate and leave the order
    PENDING for the caller to retry. Losing a race against a concurrent
    completion of the same order is reported as the no-op it is.
    """
    start = perf_counter()
    result = SettlementResult(success=False, order_id=order_id)
    try:
        try:
            settled = _settle(db, order_id, payment_reference_id, processors)
        except IntegrityError:
            # the (order_id, type) unique key caught a concurrent completion
            with db.begin():
                order = db.get(Order, order_id)
                if order is None or order.status != OrderStatus.COMPLETED:
                    raise
                order_number = order.order_number
            settlement_noops.inc()
            log.info("Order %s completed concurrently; nothing to do", order_number)
            result.success = True
            return result

        if settled is None:
            result.success = True
            return result

        settlements_total.labels(settled["method"].value).inc()
        result.transaction_ids = [settled["purchase_id"], settled["commission_id"]]
        result.success = True
        log.info(
            "Settled order %s: gross=%d commission=%d net=%d",
            settled["order_number"], settled["amount_cents"],
            settled["commission_cents"], settled["net_amount_cents"],
        )

        if settled["transfer_to"]:
            _transfer_to_seller(
                db, settled["processor"], settled["purchase_id"], settled["transfer_to"],
                settled["net_amount_cents"],
                {
                    "order_id": str(order_id),
                    "seller_id": str(settled["seller_id"]),
                    "transfer_group": settled["order_number"],
                },
            )
        return result
    finally:
        settlement_latency.observe(perf_counter() - start)


def _settle(db, order_id, payment_reference_id, processors) -> Optional[dict]:
    """The settlement transaction. Returns None when the order was already completed."""
    with db.begin():
        order = db.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        ).scalar_one_or_none()
        if not order:
            raise OrderNotFound(order_id)

        if order.status == OrderStatus.COMPLETED:
            settlement_noops.inc()
            log.info("Order %s already completed; nothing to do", order.order_number)
            return None
        if order.status != OrderStatus.PENDING:
            raise InvalidOrderState(f"Order {order.order_number} is {order.status.value}")

        seller = db.execute(
            select(SellerProfile).where(SellerProfile.user_id == order.seller_id).with_for_update()
        ).scalar_one_or_none()
        if not seller:
            raise SellerProfileNotFound(order.seller_id)

        config = load_payout_config(db)
        rate = seller.commission_rate_override
        if rate is None:
            rate = config.default_commission_rate

        amount_cents = order.amount_cents
        commission_cents = compute_commission(amount_cents, rate)
        net_amount_cents = amount_cents - commission_cents
        now = now_utc()

        processor = processor_for(processors, order.payment_method)
        transfer_to = None
        if (
            processor is not None
            and seller.processor_account_id
            and order.payment_method in REALTIME_TRANSFER_METHODS
        ):
            transfer_to = seller.processor_account_id

        meta = {"commission_rate": str(rate)}
        if transfer_to:
            # write-ahead intent; a sweep reclaims the row if it is never resolved
            meta["transfer_intent"] = {"destination": transfer_to, "at": now.isoformat()}

        reference = payment_reference_id or order.processor_payment_reference_id
        purchase_id, commission_id = uuid4(), uuid4()
        db.add(LedgerEntry(
            id=purchase_id,
            order_id=order.id,
            type=EntryType.PURCHASE,
            status=EntryStatus.PROCESSING if transfer_to else EntryStatus.COMPLETED,
            from_user_id=order.buyer_id,
            to_user_id=order.seller_id,
            amount_cents=amount_cents,
            commission_cents=commission_cents,
            net_amount_cents=net_amount_cents,
            payment_method=order.payment_method,
            processor_payment_reference_id=reference,
            description=f"Purchase for order {order.order_number}",
            processed_at=now,
            completed_at=None if transfer_to else now,
            meta=meta,
        ))
        db.add(LedgerEntry(
            id=commission_id,
            order_id=order.id,
            type=EntryType.COMMISSION,
            status=EntryStatus.COMPLETED,
            from_user_id=order.seller_id,
            to_user_id=None,
            amount_cents=commission_cents,
            payment_method=order.payment_method,
            description=f"Platform commission for order {order.order_number}",
            processed_at=now,
            completed_at=now,
        ))

        order.status = OrderStatus.COMPLETED
        order.delivered_at = now
        if reference:
            order.processor_payment_reference_id = reference
        seller.total_sales = seller.total_sales + 1
        seller.total_revenue_cents = seller.total_revenue_cents + net_amount_cents

        # captured before commit expires the instances
        return {
            "purchase_id": purchase_id,
            "commission_id": commission_id,
            "order_number": order.order_number,
            "seller_id": order.seller_id,
            "method": order.payment_method,
            "amount_cents": amount_cents,
            "commission_cents": commission_cents,
            "net_amount_cents": net_amount_cents,
            "processor": processor,
            "transfer_to": transfer_to,
        }


def _transfer_to_seller(db, processor, entry_id, account_id, amount_cents, metadata):
    """Runs outside the settlement transaction. Failures leave the row for the next sweep."""
    try:
        transfer_id = processor.transfer(account_id, amount_cents, metadata)
    except Exception as e:
        realtime_transfers.labels("failed").inc()
        log.warning("Real-time transfer for order %s failed: %s", metadata["transfer_group"], e)
        with db.begin():
            entry = db.get(LedgerEntry, entry_id)
            entry.status = EntryStatus.PENDING
            entry.failure_reason = str(e)
        return

    realtime_transfers.labels("succeeded").inc()
    try:
        with db.begin():
            entry = db.get(LedgerEntry, entry_id)
            entry.status = EntryStatus.COMPLETED
            entry.processor_transfer_id = transfer_id
            entry.completed_at = now_utc()
    except Exception:
        # money moved but the row is still PROCESSING; reconcile before the stale window ends
        log.exception(
            "Transfer %s for order %s succeeded but ledger entry %s was not updated",
            transfer_id, metadata["transfer_group"], entry_id,
        )
        raise


def process_refund(
    db: Session,
    order_id: UUID,
    amount_cents: Optional[int] = None,
    reason: Optional[str] = None,
    processors: Optional[Mapping[PaymentMethod, PaymentProcessor]] = None,
) -> SettlementResult:
    """
    Refund a completed order (fully, or partially with amount_cents):
      - atomic unit: REFUND entry, order -> REFUNDED, seller totals
        decremented with a floor of zero; an unpaid purchase entry is
        reduced by the refund and withheld once nothing is left to pay
      - after commit, processor refund when the order has a payment
        reference; a processor failure marks the REFUND entry FAILED

    Refunding an already REFUNDED order is a no-op.
    """
    result = SettlementResult(success=False, order_id=order_id)
    try:
        if amount_cents is not None and amount_cents <= 0:
            raise InvalidOrderState(f"Refund amount must be positive, got {amount_cents}")

        with db.begin():
            order = db.execute(
                select(Order).where(Order.id == order_id).with_for_update()
            ).scalar_one_or_none()
            if not order:
                raise OrderNotFound(order_id)

            if order.status == OrderStatus.REFUNDED:
                log.info("Order %s already refunded; nothing to do", order.order_number)
                result.success = True
                return result
            if order.status != OrderStatus.COMPLETED:
                raise InvalidOrderState(f"Order {order.order_number} is {order.status.value}, not completed")

            refund_cents = order.amount_cents if amount_cents is None else amount_cents
            if refund_cents > order.amount_cents:
                raise InvalidOrderState(
                    f"Refund of {refund_cents} exceeds order amount {order.amount_cents}"
                )

            reference = order.processor_payment_reference_id
            processor = processor_for(processors, order.payment_method) if reference else None
            now = now_utc()
            refund_id = uuid4()
            db.add(LedgerEntry(
                id=refund_id,
                order_id=order.id,
                type=EntryType.REFUND,
                status=EntryStatus.PROCESSING if processor else EntryStatus.COMPLETED,
                from_user_id=order.seller_id,
                to_user_id=order.buyer_id,
                amount_cents=refund_cents,
                payment_method=order.payment_method,
                processor_payment_reference_id=reference,
                description=reason or f"Refund for order {order.order_number}",
                processed_at=now,
                completed_at=None if processor else now,
            ))
            order.status = OrderStatus.REFUNDED

            _withhold_unpaid_purchase(db, order, refund_cents)

            seller = db.execute(
                select(SellerProfile).where(SellerProfile.user_id == order.seller_id).with_for_update()
            ).scalar_one_or_none()
            if seller:
                seller.total_sales = max(0, seller.total_sales - 1)
                seller.total_revenue_cents = max(0, seller.total_revenue_cents - refund_cents)
            else:
                log.warning("Refund for order %s: seller profile %s missing", order.order_number, order.seller_id)

            order_number = order.order_number

        refunds_total.inc()
        result.transaction_ids = [refund_id]
        log.info("Refunded order %s: %d cents", order_number, refund_cents)

        if processor is None:
            if reference:
                log.warning("No processor configured to refund order %s; refund recorded only", order_number)
            result.success = True
            return result

        try:
            processor_refund_id = processor.refund(reference, refund_cents)
        except Exception as e:
            refund_errors.labels("processor").inc()
            log.error("Processor refund for order %s failed: %s", order_number, e)
            with db.begin():
                entry = db.get(LedgerEntry, refund_id)
                entry.status = EntryStatus.FAILED
                entry.failure_reason = str(e)
            result.error = f"Processor refund failed: {e}"
            return result

        with db.begin():
            entry = db.get(LedgerEntry, refund_id)
            entry.status = EntryStatus.COMPLETED
            entry.completed_at = now_utc()
            entry.meta = {**(entry.meta or {}), "processor_refund_id": processor_refund_id}
        result.success = True
        return result
    except (OrderNotFound, InvalidOrderState) as e:
        refund_errors.labels(type(e).__name__).inc()
        raise


def _withhold_unpaid_purchase(db, order, refund_cents):
    """
    A purchase entry not yet paid to the seller stays eligible for what the
    refund leaves over (sweeps net refunds per order). When the refund
    covers the whole net amount the entry is taken out of payouts.
    """
    purchase = db.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.order_id == order.id,
            LedgerEntry.type == EntryType.PURCHASE,
            LedgerEntry.status.in_(AWAITING_PAYOUT),
            LedgerEntry.payout_batch_id.is_(None),
            LedgerEntry.processor_transfer_id.is_(None),
        )
        .with_for_update()
    ).scalar_one_or_none()
    if purchase is None or refund_cents < purchase.net_amount_cents:
        return
    purchase.status = EntryStatus.FAILED
    purchase.failure_reason = WITHHELD_AFTER_REFUND
    log.info("Withheld unpaid purchase for order %s after refund", order.order_number)


def summarize_order_ledger(db: Session, order_id: UUID) -> Dict:
    if not db.get(Order, order_id):
        raise OrderNotFound(order_id)
    rows = db.execute(
        select(
            LedgerEntry.type,
            func.coalesce(func.sum(LedgerEntry.amount_cents), 0),
            func.count(LedgerEntry.id),
        )
        .where(LedgerEntry.order_id == order_id)
        .group_by(LedgerEntry.type)
    ).all()
    return {
        "order_id": order_id,
        "totals_by_type": {entry_type: int(total) for entry_type, total, _ in rows},
        "entry_count": sum(int(count) for _, _, count in rows),
    }
