# tests/test_settlement.py
import threading
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from marketpay.db import SessionLocal, engine
from marketpay.errors import InvalidOrderState, OrderNotFound, SellerProfileNotFound
from marketpay.models import (
    EntryStatus, EntryType, LedgerEntry, Order, OrderStatus, PaymentMethod, SellerProfile, now_utc
)
from marketpay.services import settlement
from marketpay.services.payouts import find_stuck_entries, run_sweep
from marketpay.services.settlement import compute_commission, complete_order, process_refund


def test_complete_order_writes_purchase_and_commission(db, factory):
    seller_id = factory.seller()
    order_id = factory.order(seller_id, amount_cents=10000)

    result = complete_order(db, order_id)

    assert result.success is True
    assert len(result.transaction_ids) == 2

    purchase, = factory.entries(order_id=order_id, type=EntryType.PURCHASE)
    commission, = factory.entries(order_id=order_id, type=EntryType.COMMISSION)
    assert purchase.amount_cents == 10000
    assert purchase.commission_cents == 1500
    assert purchase.net_amount_cents == 8500
    assert purchase.net_amount_cents + purchase.commission_cents == purchase.amount_cents
    assert purchase.status == EntryStatus.COMPLETED
    assert purchase.to_user_id == seller_id
    assert commission.amount_cents == 1500
    assert commission.to_user_id is None  # the platform
    assert commission.from_user_id == seller_id

    order = factory.load(Order, order_id)
    assert order.status == OrderStatus.COMPLETED
    assert order.delivered_at is not None

    seller = factory.load(SellerProfile, seller_id)
    assert seller.total_sales == 1
    assert seller.total_revenue_cents == 8500


def test_complete_order_twice_is_a_noop(db, factory):
    seller_id = factory.seller()
    order_id = factory.order(seller_id, amount_cents=10000)

    first = complete_order(db, order_id)
    second = complete_order(db, order_id)  # duplicated webhook

    assert first.success and second.success
    assert second.transaction_ids == []
    assert len(factory.entries(order_id=order_id)) == 2
    assert factory.load(Order, order_id).status == OrderStatus.COMPLETED
    seller = factory.load(SellerProfile, seller_id)
    assert seller.total_sales == 1
    assert seller.total_revenue_cents == 8500


def test_seller_override_beats_platform_default(db, factory):
    factory.setting("default_commission_rate", 20)
    seller_id = factory.seller(commission_rate=Decimal("10.5"))
    order_id = factory.order(seller_id, amount_cents=999)

    complete_order(db, order_id)

    purchase, = factory.entries(order_id=order_id, type=EntryType.PURCHASE)
    assert purchase.commission_cents == 104  # floor(104.895)
    assert purchase.net_amount_cents == 895


def test_platform_default_rate_comes_from_settings(db, factory):
    factory.setting("default_commission_rate", 20)
    seller_id = factory.seller()
    order_id = factory.order(seller_id, amount_cents=10000)

    complete_order(db, order_id)

    purchase, = factory.entries(order_id=order_id, type=EntryType.PURCHASE)
    assert purchase.commission_cents == 2000


@pytest.mark.parametrize("amount,rate,expected", [
    (10000, 15, 1500),
    (999, 15, 149),
    (1, 15, 0),
    (333, Decimal("33.33"), 110),
    (500, 0, 0),
])
def test_compute_commission_floors(amount, rate, expected):
    assert compute_commission(amount, rate) == expected


def test_missing_order_raises_not_found(db):
    with pytest.raises(OrderNotFound):
        complete_order(db, uuid4())


def test_missing_seller_profile_writes_nothing(db, factory):
    order_id = factory.order(uuid4())

    with pytest.raises(SellerProfileNotFound):
        complete_order(db, order_id)

    assert factory.entries(order_id=order_id) == []
    assert factory.load(Order, order_id).status == OrderStatus.PENDING


def test_realtime_transfer_records_transfer_id(db, factory, processors, fake_processor):
    seller_id = factory.seller(account_id="acct_1")
    order_id = factory.order(seller_id, amount_cents=10000, payment_reference_id="pi_1")

    result = complete_order(db, order_id, processors=processors)

    assert result.success
    assert fake_processor.transfers[0][:2] == ("acct_1", 8500)
    purchase, = factory.entries(order_id=order_id, type=EntryType.PURCHASE)
    assert purchase.status == EntryStatus.COMPLETED
    assert purchase.processor_transfer_id == "tr_1"
    assert purchase.processor_payment_reference_id == "pi_1"


def test_failed_transfer_keeps_settlement_and_is_swept_later(db, factory, processors, fake_processor):
    factory.setting("enable_auto_payouts", True)
    factory.setting("min_payout_amount_cents", 0)
    seller_id = factory.seller(account_id="acct_down")
    order_id = factory.order(seller_id, amount_cents=10000)
    fake_processor.failing.add("acct_down")

    result = complete_order(db, order_id, processors=processors)

    assert result.success
    assert factory.load(Order, order_id).status == OrderStatus.COMPLETED
    purchase, = factory.entries(order_id=order_id, type=EntryType.PURCHASE)
    assert purchase.status == EntryStatus.PENDING
    assert "declined" in purchase.failure_reason
    assert purchase.processor_transfer_id is None

    # processor recovers; the next sweep pays the row
    fake_processor.failing.clear()
    factory.backdate(order_id, days=10)
    report = run_sweep(db, processors)

    assert len(report.batches) == 1
    purchase = factory.load(LedgerEntry, purchase.id)
    assert purchase.status == EntryStatus.COMPLETED
    assert purchase.payout_batch_id == report.batches[0].id
    assert fake_processor.transfers[-1][:2] == ("acct_down", 8500)


def test_transferred_purchase_is_not_swept_again(db, factory, processors, fake_processor):
    factory.setting("enable_auto_payouts", True)
    factory.setting("min_payout_amount_cents", 0)
    seller_id = factory.seller(account_id="acct_1")
    order_id = factory.order(seller_id, amount_cents=10000)
    complete_order(db, order_id, processors=processors)
    factory.backdate(order_id, days=10)

    report = run_sweep(db, processors)

    assert report.batches == []
    assert len(fake_processor.transfers) == 1


def test_refund_decrements_seller_totals_and_marks_order(db, factory):
    seller_id = factory.seller()
    order_id = factory.order(seller_id, amount_cents=10000)
    complete_order(db, order_id)

    result = process_refund(db, order_id, amount_cents=4000, reason="buyer changed mind")

    assert result.success
    refund, = factory.entries(order_id=order_id, type=EntryType.REFUND)
    assert refund.amount_cents == 4000
    assert refund.status == EntryStatus.COMPLETED
    assert refund.description == "buyer changed mind"
    assert factory.load(Order, order_id).status == OrderStatus.REFUNDED
    seller = factory.load(SellerProfile, seller_id)
    assert seller.total_revenue_cents == 4500
    assert seller.total_sales == 0


def test_refund_floors_seller_totals_at_zero(db, factory):
    seller_id = factory.seller()
    order_id = factory.order(seller_id, amount_cents=10000)
    complete_order(db, order_id)

    process_refund(db, order_id)  # full refund of 10000 against 8500 net

    seller = factory.load(SellerProfile, seller_id)
    assert seller.total_revenue_cents == 0
    assert seller.total_sales == 0


def test_refund_twice_is_a_noop(db, factory):
    seller_id = factory.seller()
    order_id = factory.order(seller_id)
    complete_order(db, order_id)

    process_refund(db, order_id, amount_cents=1000)
    again = process_refund(db, order_id, amount_cents=1000)

    assert again.success and again.transaction_ids == []
    assert len(factory.entries(order_id=order_id, type=EntryType.REFUND)) == 1


def test_refund_calls_processor_when_payment_reference_exists(db, factory, processors, fake_processor):
    seller_id = factory.seller()
    order_id = factory.order(seller_id, amount_cents=5000, payment_reference_id="pi_42")
    complete_order(db, order_id, processors=processors)

    result = process_refund(db, order_id, processors=processors)

    assert result.success
    assert fake_processor.refunds == [("pi_42", 5000)]
    refund, = factory.entries(order_id=order_id, type=EntryType.REFUND)
    assert refund.status == EntryStatus.COMPLETED
    assert refund.meta["processor_refund_id"] == "re_1"


def test_refund_processor_failure_marks_entry_failed(db, factory, processors, fake_processor):
    seller_id = factory.seller()
    order_id = factory.order(seller_id, payment_reference_id="pi_7")
    complete_order(db, order_id, processors=processors)
    fake_processor.fail_refunds = True

    result = process_refund(db, order_id, processors=processors)

    assert result.success is False
    assert "disputed" in result.error
    refund, = factory.entries(order_id=order_id, type=EntryType.REFUND)
    assert refund.status == EntryStatus.FAILED
    assert refund.failure_reason == "charge already disputed"


def test_refund_of_pending_order_is_rejected(db, factory):
    order_id = factory.order(factory.seller())
    with pytest.raises(InvalidOrderState):
        process_refund(db, order_id)


def test_refund_larger_than_order_is_rejected(db, factory):
    order_id = factory.order(factory.seller(), amount_cents=1000)
    complete_order(db, order_id)
    with pytest.raises(InvalidOrderState):
        process_refund(db, order_id, amount_cents=1001)
    assert factory.load(Order, order_id).status == OrderStatus.COMPLETED


def test_refund_missing_order_raises_not_found(db):
    with pytest.raises(OrderNotFound):
        process_refund(db, uuid4())


def test_paypal_orders_are_not_transferred_at_settlement(db, factory, processors, fake_processor):
    seller_id = factory.seller(account_id="acct_1", email="s@example.com", payout_method=PaymentMethod.PAYPAL)
    order_id = factory.order(seller_id, method=PaymentMethod.PAYPAL)

    complete_order(db, order_id, processors=processors)

    assert fake_processor.transfers == []
    purchase, = factory.entries(order_id=order_id, type=EntryType.PURCHASE)
    assert purchase.status == EntryStatus.COMPLETED


def test_zero_refund_is_rejected(db, factory):
    order_id = factory.order(factory.seller(), amount_cents=1000)
    complete_order(db, order_id)

    with pytest.raises(InvalidOrderState):
        process_refund(db, order_id, amount_cents=0)

    assert factory.load(Order, order_id).status == OrderStatus.COMPLETED
    assert factory.entries(order_id=order_id, type=EntryType.REFUND) == []


def test_refund_inside_settlement_float_withholds_payout(db, factory, processors, fake_processor):
    factory.setting("enable_auto_payouts", True)
    factory.setting("min_payout_amount_cents", 0)
    seller_id = factory.seller(account_id="acct_r")
    order_id = factory.order(seller_id, amount_cents=10000)
    complete_order(db, order_id)  # no processor: nothing leaves at settlement

    process_refund(db, order_id)
    factory.backdate(order_id, days=10)
    report = run_sweep(db, processors)

    assert report.batches == []
    assert fake_processor.transfers == []
    purchase, = factory.entries(order_id=order_id, type=EntryType.PURCHASE)
    assert purchase.status == EntryStatus.FAILED
    assert purchase.failure_reason == settlement.WITHHELD_AFTER_REFUND
    assert purchase.payout_batch_id is None


def test_partial_refund_is_netted_from_payout(db, factory, processors, fake_processor):
    factory.setting("enable_auto_payouts", True)
    factory.setting("min_payout_amount_cents", 0)
    seller_id = factory.seller(account_id="acct_p")
    order_id = factory.order(seller_id, amount_cents=10000)
    complete_order(db, order_id)

    process_refund(db, order_id, amount_cents=4000)
    factory.backdate(order_id, days=10)
    report = run_sweep(db, processors)

    assert report.batches[0].total_amount_cents == 4500
    assert fake_processor.transfers[0][:2] == ("acct_p", 4500)
    payout, = factory.entries(type=EntryType.PAYOUT)
    assert payout.amount_cents == 4500


def test_abandoned_transfer_intent_is_reclaimed_by_a_later_sweep(db, factory, processors, fake_processor, monkeypatch):
    factory.setting("enable_auto_payouts", True)
    factory.setting("min_payout_amount_cents", 0)
    seller_id = factory.seller(account_id="acct_crash")
    order_id = factory.order(seller_id, amount_cents=10000)
    # the process dies between the settlement commit and the transfer
    monkeypatch.setattr(settlement, "_transfer_to_seller", lambda *args, **kwargs: None)

    complete_order(db, order_id, processors=processors)
    factory.backdate(order_id, days=10)

    purchase, = factory.entries(order_id=order_id, type=EntryType.PURCHASE)
    assert purchase.status == EntryStatus.PROCESSING
    assert purchase.meta["transfer_intent"]["destination"] == "acct_crash"

    # still inside the stale window: the intent may be in flight
    assert run_sweep(db, processors).batches == []
    assert find_stuck_entries(db, timedelta(minutes=60)) == []

    later = now_utc() + timedelta(hours=2)
    stuck = find_stuck_entries(db, timedelta(minutes=60), now=later)
    assert [e.id for e in stuck] == [purchase.id]
    db.rollback()

    report = run_sweep(db, processors, now=later)

    batch, = report.batches
    assert batch.successful_payouts == 1
    assert fake_processor.transfers == [("acct_crash", 8500, fake_processor.transfers[0][2])]
    purchase = factory.load(LedgerEntry, purchase.id)
    assert purchase.status == EntryStatus.COMPLETED
    assert purchase.payout_batch_id == batch.id


def test_second_purchase_row_for_an_order_is_rejected(db, factory):
    seller_id = factory.seller()
    order_id = factory.order(seller_id, amount_cents=1000)
    complete_order(db, order_id)

    with pytest.raises(IntegrityError):
        with db.begin():
            db.add(LedgerEntry(
                id=uuid4(),
                order_id=order_id,
                type=EntryType.PURCHASE,
                status=EntryStatus.COMPLETED,
                from_user_id=uuid4(),
                to_user_id=seller_id,
                amount_cents=1000,
                commission_cents=150,
                net_amount_cents=850,
                payment_method=PaymentMethod.STRIPE,
            ))


@pytest.mark.skipif(engine.dialect.name != "sqlite", reason="interleaves two sessions without row locks")
def test_losing_a_completion_race_is_a_noop(db, factory, monkeypatch):
    seller_id = factory.seller()
    order_id = factory.order(seller_id, amount_cents=10000)
    real_load = settlement.load_payout_config
    raced = []

    def complete_elsewhere_first(session):
        # another worker settles the order after this one has read it as PENDING
        if not raced:
            raced.append(True)
            with SessionLocal() as other:
                complete_order(other, order_id)
        return real_load(session)

    monkeypatch.setattr(settlement, "load_payout_config", complete_elsewhere_first)

    result = complete_order(db, order_id)

    assert result.success is True
    assert result.transaction_ids == []
    assert len(factory.entries(order_id=order_id)) == 2
    seller = factory.load(SellerProfile, seller_id)
    assert seller.total_sales == 1
    assert seller.total_revenue_cents == 8500


@pytest.mark.skipif(engine.dialect.name != "postgresql", reason="needs row locks")
def test_concurrent_completions_write_one_settlement(factory):
    seller_id = factory.seller()
    order_id = factory.order(seller_id, amount_cents=10000)
    barrier = threading.Barrier(2)
    results = []

    def worker():
        with SessionLocal() as session:
            barrier.wait()
            results.append(complete_order(session, order_id))

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(r.success for r in results)
    assert sorted(len(r.transaction_ids) for r in results) == [0, 2]
    assert len(factory.entries(order_id=order_id)) == 2
    assert factory.load(SellerProfile, seller_id).total_sales == 1
