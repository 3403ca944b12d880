# marketpay/services/payouts.py
import enum
import logging
from datetime import datetime, timedelta
from typing import List, Mapping, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketpay.errors import BatchNotFound, ConfigurationError, InvalidBatchState, PayoutNotFound
from marketpay.ledger import SellerBalance, claim_seller_entries, eligible_balances, stuck_purchase_entries
from marketpay.metrics import payout_batches_total, payouts_total, sweeps_skipped
from marketpay.models import (
    BatchStatus, EntryStatus, EntryType, LedgerEntry, PaymentMethod,
    PayoutBatch, now_utc
)
from marketpay.platform_settings import PayoutConfig, load_payout_config
from marketpay.processor import PaymentProcessor, processor_for
from marketpay.schemas import LedgerEntryOut, PayoutBatchOut, SweepReport

log = logging.getLogger(__name__)

# claims older than this were abandoned by a crashed process
DEFAULT_STALE_AFTER = timedelta(minutes=60)


class PayoutMode(str, enum.Enum):
    TRANSFER = "transfer"  # this service moves the money, seller by seller
    MANUAL = "manual"      # batch is claimed here and executed outside


PAYOUT_MODES = {
    PaymentMethod.STRIPE: PayoutMode.TRANSFER,
    PaymentMethod.PAYPAL: PayoutMode.MANUAL,
}


def final_batch_status(total: int, successful: int, failed: int) -> BatchStatus:
    if total == 0 or failed == 0:
        return BatchStatus.COMPLETED
    if successful == 0:
        return BatchStatus.FAILED
    return BatchStatus.PARTIAL


def run_sweep(
    db: Session,
    processors: Optional[Mapping[PaymentMethod, PaymentProcessor]],
    now: Optional[datetime] = None,
    instant_payouts: bool = False,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> SweepReport:
    """
    One scheduled sweep over every payment method. Each method gets at most
    one batch; a ConfigurationError for one method is logged and the
    remaining methods still run. Purchase rows left ``processing`` for
    longer than stale_after are claimed again.
    """
    now = now or now_utc()
    with db.begin():
        config = load_payout_config(db)

    if not config.enable_auto_payouts:
        sweeps_skipped.labels("disabled").inc()
        log.info("Auto payouts disabled, skipping scheduled processing")
        return SweepReport(ran=False)

    # settlement float: money stays on the platform for payout_delay_days
    cutoff = now - timedelta(days=config.payout_delay_days)
    stale_before = now - stale_after
    report = SweepReport(ran=True)
    batch_ids = []
    for method in PaymentMethod:
        try:
            batch_id = _sweep_method(db, method, cutoff, stale_before, config, processors, now, instant_payouts)
        except ConfigurationError as e:
            log.error("Skipping %s payouts: %s", method.value, e)
            report.skipped_methods[method] = str(e)
            continue
        if batch_id is not None:
            batch_ids.append(batch_id)

    with db.begin():
        report.batches = [PayoutBatchOut.model_validate(get_batch(db, b)) for b in batch_ids]
    log.info("Scheduled payout processing completed: %d batch(es)", len(report.batches))
    return report


def _batch_number(method: PaymentMethod, now: datetime) -> str:
    return f"BATCH-{int(now.timestamp() * 1000)}-{method.value.upper()}-{uuid4().hex[:6]}"


def _sweep_method(db, method, cutoff, stale_before, config: PayoutConfig, processors, now,
                  instant_payouts) -> Optional[UUID]:
    mode = PAYOUT_MODES.get(method)
    if mode is None:
        raise ConfigurationError(f"Unsupported payout method {method.value}")
    processor = processor_for(processors, method)
    if mode == PayoutMode.TRANSFER and processor is None:
        raise ConfigurationError(f"No processor configured for {method.value} payouts")

    with db.begin():
        balances = eligible_balances(db, method, cutoff, config.min_payout_amount_cents, stale_before)
        if not balances:
            log.info("No eligible %s sellers for payout", method.value)
            return None

        batch = PayoutBatch(
            id=uuid4(),
            batch_number=_batch_number(method, now),
            payout_method=method,
            status=BatchStatus.PROCESSING,
            total_amount_cents=sum(b.amount_cents for b in balances),
            total_payouts=len(balances),
            error_log=[],
            processed_at=now,
            meta={"scheduled": True, "cutoff": cutoff.isoformat()},
        )
        db.add(batch)
        batch_id, batch_number = batch.id, batch.batch_number

    log.info(
        "Created %s payout batch %s for %d eligible seller(s)",
        method.value, batch_number, len(balances),
    )

    if mode == PayoutMode.MANUAL:
        _queue_manual_batch(db, batch_id, batch_number, method, balances, cutoff, stale_before)
        return batch_id

    # sequential on purpose: batch counters need no locking and the processor sees no burst
    for balance in balances:
        _pay_seller(db, processor, batch_id, batch_number, method, balance, cutoff, stale_before, instant_payouts)

    with db.begin():
        batch = db.get(PayoutBatch, batch_id)
        batch.status = final_batch_status(batch.total_payouts, batch.successful_payouts, batch.failed_payouts)
        batch.completed_at = now_utc()
        status = batch.status
        log.info(
            "Batch %s finished %s: %d/%d paid, %d failed",
            batch_number, status.value, batch.successful_payouts, batch.total_payouts, batch.failed_payouts,
        )
    payout_batches_total.labels(method.value, status.value).inc()
    return batch_id


def _drop_from_batch(db, batch_id, balance: SellerBalance, entry_ids=(), reason=None):
    """The seller turned out to have nothing to pay; keep S + F == N for the batch."""
    with db.begin():
        if entry_ids:
            db.execute(
                update(LedgerEntry)
                .where(LedgerEntry.id.in_(entry_ids))
                .values(status=EntryStatus.FAILED, failure_reason=reason)
                .execution_options(synchronize_session=False)
            )
        batch = db.get(PayoutBatch, batch_id)
        batch.total_payouts = batch.total_payouts - 1
        batch.total_amount_cents = max(0, batch.total_amount_cents - balance.amount_cents)


def _pay_seller(db, processor, batch_id, batch_number, method, balance: SellerBalance, cutoff,
                stale_before, instant_payouts):
    with db.begin():
        claimed = claim_seller_entries(db, balance.seller_id, method, cutoff, stale_before=stale_before)
    if not claimed:
        log.warning("Seller %s: eligible rows were claimed elsewhere; dropped from batch", balance.seller_id)
        _drop_from_batch(db, batch_id, balance)
        return

    entry_ids = [c.id for c in claimed]
    amount_cents = sum(c.payable_cents for c in claimed)
    if amount_cents <= 0:
        log.warning("Seller %s: claimed rows were refunded in full; dropped from batch", balance.seller_id)
        _drop_from_batch(db, batch_id, balance, entry_ids, "Order refunded before payout")
        return

    metadata = {
        "batch_id": str(batch_id),
        "seller_id": str(balance.seller_id),
        "transaction_count": str(len(entry_ids)),
        "transfer_group": batch_number,
    }

    try:
        transfer_id = processor.transfer(balance.destination, amount_cents, metadata)
    except Exception as e:
        payouts_total.labels(method.value, "failed").inc()
        log.error("Payout failed for seller %s in batch %s: %s", balance.seller_id, batch_number, e)
        with db.begin():
            # release the claim; rows stay un-batched for the next sweep
            db.execute(
                update(LedgerEntry)
                .where(LedgerEntry.id.in_(entry_ids))
                .values(status=EntryStatus.PENDING, failure_reason=str(e))
                .execution_options(synchronize_session=False)
            )
            batch = db.get(PayoutBatch, batch_id)
            batch.failed_payouts = batch.failed_payouts + 1
            batch.error_log = [*batch.error_log, f"{balance.seller_id}: {e}"]
        return

    payout_id = None
    payout_error = None
    if instant_payouts:
        try:
            payout_id = processor.payout(balance.destination, amount_cents, metadata)
        except Exception as e:
            # funds already sit on the connected account; the bank payout can be redone by the seller
            payout_error = str(e)
            log.warning("Instant payout for seller %s failed after transfer %s: %s", balance.seller_id, transfer_id, e)

    now = now_utc()
    with db.begin():
        db.execute(
            update(LedgerEntry)
            .where(LedgerEntry.id.in_(entry_ids))
            .values(
                status=EntryStatus.COMPLETED,
                payout_batch_id=batch_id,
                processor_transfer_id=transfer_id,
                processor_payout_id=payout_id,
                failure_reason=None,
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        meta = {"source_transaction_ids": [str(i) for i in entry_ids]}
        if payout_error:
            meta["payout_error"] = payout_error
        db.add(LedgerEntry(
            id=uuid4(),
            type=EntryType.PAYOUT,
            # a bank payout is in flight until the processor reports it paid or failed
            status=EntryStatus.PROCESSING if payout_id else EntryStatus.COMPLETED,
            from_user_id=None,
            to_user_id=balance.seller_id,
            amount_cents=amount_cents,
            payment_method=method,
            processor_transfer_id=transfer_id,
            processor_payout_id=payout_id,
            payout_batch_id=batch_id,
            description=f"{method.value} payout from batch {batch_number}",
            processed_at=now,
            completed_at=None if payout_id else now,
            meta=meta,
        ))
        batch = db.get(PayoutBatch, batch_id)
        batch.successful_payouts = batch.successful_payouts + 1

    payouts_total.labels(method.value, "succeeded").inc()
    log.info("Processed %s payout for seller %s: %d cents", method.value, balance.seller_id, amount_cents)


def _queue_manual_batch(db, batch_id, batch_number, method, balances: List[SellerBalance], cutoff, stale_before):
    """
    Claim every seller's rows under the batch and leave it PENDING with the
    breakdown needed to execute it outside this service. Claimed-but-unpaid
    is preferred over a second sweep picking the same rows up.
    """
    with db.begin():
        sellers = []
        for balance in balances:
            claimed = claim_seller_entries(
                db, balance.seller_id, method, cutoff, batch_id=batch_id, stale_before=stale_before
            )
            if not claimed:
                continue
            sellers.append({
                "seller_id": str(balance.seller_id),
                "amount_cents": sum(c.payable_cents for c in claimed),
                "email": balance.destination,
                "transaction_ids": [str(c.id) for c in claimed],
            })
            log.info("Queued %s payout for seller %s", method.value, balance.seller_id)

        batch = db.get(PayoutBatch, batch_id)
        batch.status = BatchStatus.PENDING
        batch.total_payouts = len(sellers)
        batch.total_amount_cents = sum(s["amount_cents"] for s in sellers)
        batch.meta = {**batch.meta, "requires_manual_processing": True, "sellers": sellers}

    payout_batches_total.labels(method.value, BatchStatus.PENDING.value).inc()
    log.info("%s payout batch %s created, awaiting manual processing", method.value, batch_number)


def settle_manual_batch(
    db: Session,
    batch_id: UUID,
    failed_sellers: Optional[Mapping[UUID, str]] = None,
    batch_error: Optional[str] = None,
    payout_reference: Optional[str] = None,
) -> PayoutBatchOut:
    """
    Record the outcome of a batch executed outside this service.

    ``batch_error`` fails the whole batch; otherwise every seller not named
    in ``failed_sellers`` was paid. Paid sellers get their rows completed
    and a PAYOUT entry; failed sellers get their rows failed. Rows keep
    the batch id either way, so a failed seller is re-issued by an operator.
    """
    failed = {str(k): v for k, v in (failed_sellers or {}).items()}
    with db.begin():
        batch = db.execute(
            select(PayoutBatch).where(PayoutBatch.id == batch_id).with_for_update()
        ).scalar_one_or_none()
        if not batch:
            raise BatchNotFound(batch_id)
        meta = batch.meta or {}
        if batch.status != BatchStatus.PENDING or not meta.get("requires_manual_processing"):
            raise InvalidBatchState(f"Batch {batch.batch_number} is {batch.status.value}, not awaiting an outcome")

        sellers = meta.get("sellers", [])
        unknown = set(failed) - {s["seller_id"] for s in sellers}
        if unknown:
            raise InvalidBatchState(f"Sellers not in batch {batch.batch_number}: {sorted(unknown)}")

        now = now_utc()
        method = batch.payout_method
        successful = 0
        errors = list(batch.error_log)
        for line in sellers:
            entry_ids = [UUID(t) for t in line["transaction_ids"]]
            reason = batch_error or failed.get(line["seller_id"])
            if reason:
                db.execute(
                    update(LedgerEntry)
                    .where(LedgerEntry.id.in_(entry_ids))
                    .values(status=EntryStatus.FAILED, failure_reason=reason)
                    .execution_options(synchronize_session=False)
                )
                errors.append(f"{line['seller_id']}: {reason}")
                payouts_total.labels(method.value, "failed").inc()
                continue

            db.execute(
                update(LedgerEntry)
                .where(LedgerEntry.id.in_(entry_ids))
                .values(
                    status=EntryStatus.COMPLETED,
                    processor_payout_id=payout_reference,
                    failure_reason=None,
                    completed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            db.add(LedgerEntry(
                id=uuid4(),
                type=EntryType.PAYOUT,
                status=EntryStatus.COMPLETED,
                from_user_id=None,
                to_user_id=UUID(line["seller_id"]),
                amount_cents=line["amount_cents"],
                payment_method=method,
                processor_payout_id=payout_reference,
                payout_batch_id=batch.id,
                description=f"{method.value} payout from batch {batch.batch_number}",
                processed_at=now,
                completed_at=now,
                meta={"source_transaction_ids": line["transaction_ids"]},
            ))
            successful += 1
            payouts_total.labels(method.value, "succeeded").inc()

        batch.successful_payouts = successful
        batch.failed_payouts = len(sellers) - successful
        batch.error_log = errors
        batch.status = final_batch_status(batch.total_payouts, batch.successful_payouts, batch.failed_payouts)
        batch.completed_at = now
        if payout_reference:
            batch.meta = {**meta, "payout_reference": payout_reference}
        settled = PayoutBatchOut.model_validate(batch)

    payout_batches_total.labels(method.value, settled.status.value).inc()
    log.info(
        "Manual batch %s settled %s: %d paid, %d failed",
        settled.batch_number, settled.status.value, settled.successful_payouts, settled.failed_payouts,
    )
    return settled


def record_payout_outcome(
    db: Session,
    processor_payout_id: str,
    paid: bool,
    failure_reason: Optional[str] = None,
) -> List[LedgerEntryOut]:
    """
    Finish the PAYOUT entries of an instant payout once the processor
    reports it paid or failed. Entries already finished are left alone, so
    a repeated notification is harmless.
    """
    with db.begin():
        entries = db.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.type == EntryType.PAYOUT,
                LedgerEntry.processor_payout_id == processor_payout_id,
            )
            .with_for_update()
        ).scalars().all()
        if not entries:
            raise PayoutNotFound(processor_payout_id)

        now = now_utc()
        for entry in entries:
            if entry.status != EntryStatus.PROCESSING:
                continue
            if paid:
                entry.status = EntryStatus.COMPLETED
                entry.completed_at = now
            else:
                entry.status = EntryStatus.FAILED
                entry.failure_reason = failure_reason or "Payout failed"
        result = [LedgerEntryOut.model_validate(e) for e in entries]

    if paid:
        log.info("Payout %s paid", processor_payout_id)
    else:
        log.warning("Payout %s failed: %s", processor_payout_id, failure_reason)
    return result


def get_batch(db: Session, batch_id: UUID) -> PayoutBatch:
    batch = db.get(PayoutBatch, batch_id)
    if not batch:
        raise BatchNotFound(batch_id)
    return batch


def find_stale_batches(db: Session, older_than: timedelta, now: Optional[datetime] = None) -> List[PayoutBatch]:
    """Batches still PROCESSING past the liveness window, e.g. after a crashed sweep."""
    now = now or now_utc()
    return list(
        db.execute(
            select(PayoutBatch)
            .where(
                PayoutBatch.status == BatchStatus.PROCESSING,
                PayoutBatch.processed_at <= now - older_than,
            )
            .order_by(PayoutBatch.processed_at)
        ).scalars().all()
    )


def find_stuck_entries(db: Session, older_than: timedelta, now: Optional[datetime] = None) -> List[LedgerEntry]:
    """Purchase rows whose transfer or claim never finished; the next sweep claims them again."""
    now = now or now_utc()
    return stuck_purchase_entries(db, now - older_than)
