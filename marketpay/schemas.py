from uuid import UUID
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from marketpay.models import (
    BatchStatus, EntryStatus, EntryType, OrderStatus, PaymentMethod
)


class OrderCreate(BaseModel):
    buyer_id: UUID
    seller_id: UUID
    # Validate using Field constraints (keeps Pylance happy)
    amount_cents: int = Field(..., gt=0, description="Gross amount in cents, must be > 0")
    payment_method: PaymentMethod = PaymentMethod.STRIPE


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    buyer_id: UUID
    seller_id: UUID
    amount_cents: int
    payment_method: PaymentMethod
    status: OrderStatus


class OrderDetail(OrderOut):
    processor_payment_reference_id: Optional[str] = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    delivered_at: datetime | None = None


class CompleteOrderIn(BaseModel):
    payment_reference_id: Optional[str] = None


class RefundIn(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None


class SettlementResult(BaseModel):
    success: bool
    order_id: UUID
    transaction_ids: List[UUID] = []
    error: Optional[str] = None


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: Optional[UUID]
    type: EntryType
    status: EntryStatus
    from_user_id: Optional[UUID]
    to_user_id: Optional[UUID]
    amount_cents: int
    commission_cents: Optional[int] = None
    net_amount_cents: Optional[int] = None
    payment_method: PaymentMethod
    processor_transfer_id: Optional[str] = None
    processor_payout_id: Optional[str] = None
    payout_batch_id: Optional[UUID] = None
    failure_reason: Optional[str] = None


class LedgerSummaryOut(BaseModel):
    order_id: UUID
    totals_by_type: Dict[EntryType, int]
    entry_count: int


class PayoutBatchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    batch_number: str
    payout_method: PaymentMethod
    status: BatchStatus
    total_amount_cents: int
    total_payouts: int
    successful_payouts: int
    failed_payouts: int
    error_log: List[str]
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    meta: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("meta", "metadata"),
        serialization_alias="metadata",
    )


class SweepReport(BaseModel):
    ran: bool
    batches: List[PayoutBatchOut] = []
    skipped_methods: Dict[PaymentMethod, str] = {}


class PayoutEstimate(BaseModel):
    date: date
    amount_cents: int


class ManualBatchOutcomeIn(BaseModel):
    payout_reference: Optional[str] = None
    batch_error: Optional[str] = None
    failed_sellers: Dict[UUID, str] = {}


class PayoutOutcomeIn(BaseModel):
    paid: bool
    failure_reason: Optional[str] = None
