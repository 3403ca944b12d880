# marketpay/processor.py
"""
Payment processor seam.

The core only needs three capabilities and treats each call as
non-idempotent: a failed or repeated call is never retried automatically
here. Duplicate protection lives in the ledger (status / payout_batch_id
claiming), not in the processor.
"""
import logging
from typing import Dict, Mapping, Optional, Protocol

import stripe

from marketpay.models import PaymentMethod

log = logging.getLogger(__name__)


class ProcessorError(Exception):
    """An external transfer/payout/refund call failed."""


class PaymentProcessor(Protocol):
    def transfer(self, destination_account_id: str, amount_cents: int, metadata: Mapping[str, str]) -> str: ...

    def payout(self, destination_account_id: str, amount_cents: int, metadata: Mapping[str, str]) -> str: ...

    def refund(self, payment_reference_id: str, amount_cents: int) -> str: ...


class StripeProcessor:
    """Connected-account transfers, payouts and refunds through the Stripe SDK."""

    def __init__(self, api_key: str, currency: str = "usd"):
        self.api_key = api_key
        self.currency = currency

    def transfer(self, destination_account_id, amount_cents, metadata):
        try:
            transfer = stripe.Transfer.create(
                api_key=self.api_key,
                amount=amount_cents,
                currency=self.currency,
                destination=destination_account_id,
                transfer_group=metadata.get("transfer_group"),
                metadata=dict(metadata),
            )
        except stripe.StripeError as e:
            raise ProcessorError(e.user_message or str(e)) from e
        return transfer.id

    def payout(self, destination_account_id, amount_cents, metadata):
        # Pays out from the connected account's own balance to its bank
        try:
            payout = stripe.Payout.create(
                api_key=self.api_key,
                stripe_account=destination_account_id,
                amount=amount_cents,
                currency=self.currency,
                metadata=dict(metadata),
            )
        except stripe.StripeError as e:
            raise ProcessorError(e.user_message or str(e)) from e
        return payout.id

    def refund(self, payment_reference_id, amount_cents):
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=payment_reference_id,
                amount=amount_cents,
                reason="requested_by_customer",
            )
        except stripe.StripeError as e:
            raise ProcessorError(e.user_message or str(e)) from e
        return refund.id


def build_processors(app_settings) -> Dict[PaymentMethod, PaymentProcessor]:
    """
    Processors keyed by payment method. A method missing from the mapping
    has no automated settlement; PayPal batches are always executed
    outside this service.
    """
    processors: Dict[PaymentMethod, PaymentProcessor] = {}
    if app_settings.stripe_secret_key:
        processors[PaymentMethod.STRIPE] = StripeProcessor(
            app_settings.stripe_secret_key, currency=app_settings.payout_currency
        )
    else:
        log.warning("STRIPE_SECRET_KEY not set; Stripe transfers are disabled")
    return processors


def processor_for(processors: Optional[Mapping[PaymentMethod, PaymentProcessor]], method: PaymentMethod):
    if not processors:
        return None
    return processors.get(method)
