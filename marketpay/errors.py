# marketpay/errors.py
"""Domain errors raised by the settlement and payout services."""


class NotFound(Exception):
    """A referenced record does not exist. Nothing was written."""


class OrderNotFound(NotFound):
    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class SellerProfileNotFound(NotFound):
    def __init__(self, seller_id):
        super().__init__(f"Seller profile for {seller_id} not found")
        self.seller_id = seller_id


class BatchNotFound(NotFound):
    def __init__(self, batch_id):
        super().__init__(f"Payout batch {batch_id} not found")
        self.batch_id = batch_id


class InvalidOrderState(Exception):
    """The order cannot make the requested transition."""


class ConfigurationError(Exception):
    """A platform setting is invalid or a payout method has no usable processor."""


class PayoutNotFound(NotFound):
    def __init__(self, payout_id):
        super().__init__(f"Payout {payout_id} not found")
        self.payout_id = payout_id


class InvalidBatchState(Exception):
    """The payout batch cannot take the requested outcome."""
