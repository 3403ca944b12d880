# marketpay/metrics.py
from prometheus_client import Counter, Histogram, make_asgi_app

# Settlement
settlements_total = Counter("settlements_total", "Orders settled into ledger entries", ["payment_method"])
settlement_noops = Counter(
    "settlement_noops_total",
    "complete_order calls on an already completed order (duplicate webhook, retry)",
)
realtime_transfers = Counter(
    "realtime_transfers_total",
    "Real-time seller transfers attempted after settlement",
    ["outcome"],
)

refunds_total = Counter("refunds_total", "Refunds recorded in the ledger")
refund_errors = Counter("refund_errors_total", "Refund errors", ["type"])

# Payout sweeps
payouts_total = Counter("payouts_total", "Per-seller payout outcomes", ["method", "outcome"])
payout_batches_total = Counter("payout_batches_total", "Payout batches created", ["method", "status"])
sweeps_skipped = Counter("payout_sweeps_skipped_total", "Sweeps skipped", ["reason"])

# Latency
settlement_latency = Histogram("settlement_latency_seconds", "complete_order latency in seconds")
sweep_latency = Histogram("payout_sweep_latency_seconds", "Scheduled sweep latency in seconds")

# ASGI app for /metrics
metrics_asgi_app = make_asgi_app()
