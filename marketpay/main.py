import logging
from datetime import timedelta
from uuid import UUID, uuid4

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from contextlib import asynccontextmanager

from marketpay.config import settings
from marketpay.db import engine, SessionLocal, ping_db
from marketpay.errors import InvalidBatchState, InvalidOrderState, NotFound
from marketpay.ledger import order_entries
from marketpay.models import Base, Order, OrderStatus
from marketpay.processor import build_processors
from marketpay.scheduler import PayoutScheduler
from marketpay.schemas import (
    CompleteOrderIn, LedgerEntryOut, LedgerSummaryOut, ManualBatchOutcomeIn, OrderCreate, OrderDetail,
    OrderOut, PayoutBatchOut, PayoutEstimate, PayoutOutcomeIn, RefundIn, SettlementResult, SweepReport
)
from marketpay.services.estimator import next_payout_for
from marketpay.services.payouts import (
    find_stale_batches, find_stuck_entries, get_batch, record_payout_outcome, settle_manual_batch
)
from marketpay.services.settlement import complete_order, process_refund, summarize_order_ledger
from marketpay.metrics import metrics_asgi_app

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger(__name__)

processors = build_processors(settings)
payout_scheduler = PayoutScheduler(
    SessionLocal,
    processors,
    timezone=settings.payout_scheduler_timezone,
    instant_payouts=settings.stripe_instant_payouts,
    stale_after=timedelta(minutes=settings.stale_batch_minutes),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # runs once at startup
    Base.metadata.create_all(bind=engine)
    if settings.payout_scheduler_enabled:
        payout_scheduler.start()
    else:
        log.info("Payout scheduler disabled (PAYOUT_SCHEDULER_ENABLED=false)")
    yield
    payout_scheduler.stop()

app = FastAPI(title="marketpay settlement", lifespan=lifespan)


app.mount("/metrics", metrics_asgi_app)


def get_db():
    with SessionLocal() as db:
        yield db

def get_processors():
    return processors

def get_payout_scheduler():
    return payout_scheduler


@app.get("/")
def root():
    return {"service": "marketpay", "docs": "/docs"}

@app.get("/healthz")
def healthz():
    try:
        ping_db()
        return {"ok": True, "db": "up", "scheduler": payout_scheduler.get_status()}
    except Exception:
        return {"ok": False, "db": "down"}

@app.post("/orders", response_model=OrderOut, tags=["orders"])
def create_order(payload: OrderCreate, db: Session = Depends(get_db)):
    order = Order(
        id=uuid4(),
        order_number=f"ORD-{uuid4().hex[:12].upper()}",
        buyer_id=payload.buyer_id,
        seller_id=payload.seller_id,
        amount_cents=payload.amount_cents,
        payment_method=payload.payment_method,
        status=OrderStatus.PENDING,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    return order

@app.get("/orders/{order_id}", response_model=OrderDetail, tags=["orders"])
def get_order(order_id: UUID, db: Session = Depends(get_db)):
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order

@app.post("/orders/{order_id}/complete", response_model=SettlementResult, tags=["settlement"])
def complete_order_endpoint(
    order_id: UUID,
    payload: Optional[CompleteOrderIn] = None,
    db: Session = Depends(get_db),
    processors=Depends(get_processors),
):
    reference = payload.payment_reference_id if payload else None
    try:
        return complete_order(db, order_id, reference, processors=processors)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidOrderState as e:
        raise HTTPException(status_code=409, detail=str(e))

@app.post("/orders/{order_id}/refund", response_model=SettlementResult, tags=["settlement"])
def refund_order(
    order_id: UUID,
    payload: Optional[RefundIn] = None,
    db: Session = Depends(get_db),
    processors=Depends(get_processors),
):
    payload = payload or RefundIn()
    try:
        return process_refund(db, order_id, payload.amount_cents, payload.reason, processors=processors)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidOrderState as e:
        raise HTTPException(status_code=409, detail=str(e))

@app.get("/orders/{order_id}/ledger", response_model=List[LedgerEntryOut], tags=["ledger"])
def get_order_ledger(order_id: UUID, db: Session = Depends(get_db)):
    # 404 if order doesn't exist (nicer than returning empty)
    if not db.get(Order, order_id):
        raise HTTPException(status_code=404, detail="Order not found")
    return order_entries(db, order_id)

@app.get("/orders/{order_id}/ledger/summary", response_model=LedgerSummaryOut, tags=["ledger"])
def get_order_ledger_summary(order_id: UUID, db: Session = Depends(get_db)):
    try:
        return summarize_order_ledger(db, order_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

@app.get("/sellers/{seller_id}/next-payout", response_model=Optional[PayoutEstimate], tags=["payouts"])
def get_next_payout(seller_id: UUID, db: Session = Depends(get_db)):
    return next_payout_for(db, seller_id)

@app.post("/payouts/sweep", response_model=SweepReport, tags=["payouts"])
def trigger_sweep(scheduler: PayoutScheduler = Depends(get_payout_scheduler)):
    report = scheduler.run_scheduled_sweep()
    if report is None:
        raise HTTPException(status_code=409, detail="Payout sweep already in progress")
    return report

@app.get("/payouts/batches/stale", response_model=List[PayoutBatchOut], tags=["payouts"])
def get_stale_batches(db: Session = Depends(get_db)):
    return find_stale_batches(db, timedelta(minutes=settings.stale_batch_minutes))

@app.get("/payouts/batches/{batch_id}", response_model=PayoutBatchOut, tags=["payouts"])
def get_payout_batch(batch_id: UUID, db: Session = Depends(get_db)):
    try:
        return get_batch(db, batch_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

@app.post("/payouts/batches/{batch_id}/settle", response_model=PayoutBatchOut, tags=["payouts"])
def settle_payout_batch(batch_id: UUID, payload: ManualBatchOutcomeIn, db: Session = Depends(get_db)):
    try:
        return settle_manual_batch(
            db, batch_id,
            failed_sellers=payload.failed_sellers,
            batch_error=payload.batch_error,
            payout_reference=payload.payout_reference,
        )
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidBatchState as e:
        raise HTTPException(status_code=409, detail=str(e))

@app.post("/payouts/{payout_id}/outcome", response_model=List[LedgerEntryOut], tags=["payouts"])
def payout_outcome(payout_id: str, payload: PayoutOutcomeIn, db: Session = Depends(get_db)):
    try:
        return record_payout_outcome(db, payout_id, payload.paid, payload.failure_reason)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

@app.get("/payouts/entries/stuck", response_model=List[LedgerEntryOut], tags=["payouts"])
def get_stuck_entries(db: Session = Depends(get_db)):
    return find_stuck_entries(db, timedelta(minutes=settings.stale_batch_minutes))
