# marketpay/models.py
from datetime import datetime, timezone
import enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer, Numeric,
    String, Text, JSON, UniqueConstraint, Uuid, Index
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def now_utc():
    return datetime.now(timezone.utc)


class PaymentMethod(str, enum.Enum):
    STRIPE = "stripe"   # connected-account transfers, settled by this service
    PAYPAL = "paypal"   # payout API, executed outside this service


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class EntryType(str, enum.Enum):
    PURCHASE = "purchase"
    COMMISSION = "commission"
    REFUND = "refund"
    PAYOUT = "payout"


class EntryStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class Order(Base):
    __tablename__ = "marketplace_orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_number = Column(String(64), nullable=False, unique=True)
    buyer_id = Column(Uuid, nullable=False)
    seller_id = Column(Uuid, nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    processor_payment_reference_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="orders_amount_positive"),
    )

    ledger_entries = relationship("LedgerEntry", back_populates="order")


class LedgerEntry(Base):
    __tablename__ = "transaction_ledger"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("marketplace_orders.id", ondelete="CASCADE"), nullable=True)
    type = Column(Enum(EntryType), nullable=False)
    status = Column(Enum(EntryStatus), nullable=False, default=EntryStatus.PENDING)
    from_user_id = Column(Uuid, nullable=True)
    to_user_id = Column(Uuid, nullable=True)  # NULL = the platform
    amount_cents = Column(Integer, nullable=False)
    commission_cents = Column(Integer, nullable=True)
    net_amount_cents = Column(Integer, nullable=True)
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    processor_payment_reference_id = Column(String(255), nullable=True)
    processor_transfer_id = Column(String(255), nullable=True)
    processor_payout_id = Column(String(255), nullable=True)
    payout_batch_id = Column(Uuid, ForeignKey("payout_batches.id"), nullable=True)
    failure_reason = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    order = relationship("Order", back_populates="ledger_entries")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ledger_amount_nonneg"),
        CheckConstraint(
            "type <> 'PURCHASE' OR net_amount_cents + commission_cents = amount_cents",
            name="ledger_purchase_net_matches",
        ),
        # one purchase / commission / refund row per order; payouts have no order
        UniqueConstraint("order_id", "type", name="ledger_one_entry_per_order_type"),
        Index("idx_ledger_payout_eligibility", "type", "payment_method", "payout_batch_id", "created_at"),
    )


class SellerProfile(Base):
    __tablename__ = "seller_profiles"

    user_id = Column(Uuid, primary_key=True)
    processor_account_id = Column(String(255), nullable=True)
    processor_payout_email = Column(String(255), nullable=True)
    payout_method = Column(Enum(PaymentMethod), nullable=False, default=PaymentMethod.STRIPE)
    commission_rate_override = Column(Numeric(5, 2), nullable=True)
    onboarding_status = Column(String(32), nullable=False, default="pending")
    total_sales = Column(Integer, nullable=False, default=0)
    total_revenue_cents = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        CheckConstraint("total_sales >= 0 AND total_revenue_cents >= 0", name="seller_totals_nonneg"),
    )


class PayoutBatch(Base):
    __tablename__ = "payout_batches"

    id = Column(Uuid, primary_key=True, default=uuid4)
    batch_number = Column(String(64), nullable=False, unique=True)
    payout_method = Column(Enum(PaymentMethod), nullable=False)
    status = Column(Enum(BatchStatus), nullable=False, default=BatchStatus.PROCESSING)
    total_amount_cents = Column(Integer, nullable=False, default=0)
    total_payouts = Column(Integer, nullable=False, default=0)
    successful_payouts = Column(Integer, nullable=False, default=0)
    failed_payouts = Column(Integer, nullable=False, default=0)
    error_log = Column(JSON, nullable=False, default=list)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint(
            "successful_payouts + failed_payouts <= total_payouts",
            name="batch_outcomes_bounded",
        ),
    )


class PlatformSetting(Base):
    __tablename__ = "platform_settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)  # JSON-encoded, bare strings tolerated
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)
