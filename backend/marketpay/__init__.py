"""MarketPay: payment-to-fulfillment reconciliation backend for the B2B marketplace."""

__version__ = "0.1.0"
