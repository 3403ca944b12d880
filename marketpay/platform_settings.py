# marketpay/platform_settings.py
import json
import logging
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from marketpay.errors import ConfigurationError
from marketpay.models import PlatformSetting

log = logging.getLogger(__name__)

PayoutFrequency = Literal["daily", "weekly", "biweekly", "monthly"]


class PayoutConfig(BaseModel):
    """Platform settings the settlement core reads, loaded once per run."""

    default_commission_rate: Decimal = Field(default=Decimal("15"), ge=0, le=100)
    min_payout_amount_cents: int = Field(default=1000, ge=0)
    payout_frequency: PayoutFrequency = "weekly"
    payout_delay_days: int = Field(default=7, ge=0)
    enable_auto_payouts: bool = False


def _decode(raw: str):
    # Admin tooling stores JSON ('7', '"weekly"', 'true') but bare strings show up too
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def load_payout_config(db: Session) -> PayoutConfig:
    """
    Read the known keys from platform_settings and apply defaults for
    anything missing. Raises ConfigurationError if a stored value is invalid.
    """
    keys = list(PayoutConfig.model_fields)
    rows = db.execute(
        select(PlatformSetting).where(PlatformSetting.key.in_(keys))
    ).scalars().all()
    values = {row.key: _decode(row.value) for row in rows}

    try:
        config = PayoutConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid platform settings: {e}") from e

    log.debug("Loaded payout config: %s", config.model_dump())
    return config
