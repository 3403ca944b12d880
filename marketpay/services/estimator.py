# marketpay/services/estimator.py
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from marketpay.ledger import seller_eligible_total
from marketpay.models import now_utc
from marketpay.platform_settings import load_payout_config
from marketpay.schemas import PayoutEstimate


def next_payout_date(today: date, frequency: str) -> date:
    """
    Next scheduled sweep date strictly after today. Weekly sweeps run on
    Mondays, biweekly ones on Mondays of odd ISO weeks, monthly ones on
    the 1st.
    """
    if frequency == "daily":
        return today + timedelta(days=1)
    if frequency == "monthly":
        if today.month == 12:
            return date(today.year + 1, 1, 1)
        return date(today.year, today.month + 1, 1)

    next_monday = today + timedelta(days=(7 - today.weekday()) % 7 or 7)
    if frequency == "biweekly" and next_monday.isocalendar()[1] % 2 == 0:
        next_monday += timedelta(days=7)
    return next_monday


def next_payout_for(db: Session, seller_id: UUID, now: Optional[datetime] = None) -> Optional[PayoutEstimate]:
    """When and how much the seller should be paid next; None if nothing is due. Read-only."""
    now = now or now_utc()
    config = load_payout_config(db)

    payout_on = next_payout_date(now.date(), config.payout_frequency)
    cutoff = datetime.combine(payout_on, time.min, tzinfo=timezone.utc) - timedelta(days=config.payout_delay_days)

    amount_cents = seller_eligible_total(db, seller_id, cutoff)
    if amount_cents <= 0:
        return None
    return PayoutEstimate(date=payout_on, amount_cents=amount_cents)
