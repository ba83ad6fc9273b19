"""
Mock Payment Gateway

Simulates the hosted-checkout gateway: hands out a checkout URL for a
transaction reference, later reports the transaction's status, and
accepts refunds. It also queues bank transfers for seller payouts.

Demo Mode: every verification reports success, so the whole
checkout -> confirmation -> fulfillment flow can be exercised without a
real provider. Outside demo mode a transaction stays pending until
complete_payment() is called for it.
"""
import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..config import settings
from ..exceptions import GatewayError

logger = logging.getLogger(__name__)

# Transactions the gateway has seen
_transactions: Dict[str, Dict[str, Any]] = {}
# Format: {"tx_ref": {"amount": int, "currency": str, "status": str, "reference": str, ...}}

# Outgoing seller transfers, keyed by our payout reference
_transfers: Dict[str, Dict[str, Any]] = {}

_BANKS = [
    {"id": "946", "name": "Commercial Bank of Ethiopia", "currency": "ETB"},
    {"id": "656", "name": "Awash Bank", "currency": "ETB"},
    {"id": "347", "name": "Bank of Abyssinia", "currency": "ETB"},
    {"id": "855", "name": "telebirr", "currency": "ETB", "is_mobilemoney": 1},
]


def get_payment_urls(tx_ref: str, payment_type: str = "order") -> Dict[str, str]:
    """Return and webhook callback URLs for a transaction."""
    base = settings.app_base_url.rstrip("/")
    return {
        "return_url": f"{base}/payment/complete?tx_ref={tx_ref}&type={payment_type}",
        "callback_url": f"{base}/api/payments/webhook",
    }


def initialize_payment(
    tx_ref: str,
    amount: int,
    currency: str,
    email: str,
    name: Optional[str] = None,
    return_url: Optional[str] = None,
    callback_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Register a transaction and return its hosted checkout URL.

    Args:
        tx_ref: Our external transaction reference
        amount: Amount in minor currency units
        currency: ISO currency code
        email: Payer email
        name: Payer name
        return_url: Where the payer is sent after checkout
        callback_url: Where the gateway posts its webhook

    Returns:
        {"status": "success", "checkout_url": str}

    Raises:
        GatewayError: invalid amount
    """
    if amount <= 0:
        raise GatewayError("Amount must be positive", {"tx_ref": tx_ref, "amount": amount})

    reference = f"GW{hashlib.sha256(tx_ref.encode()).hexdigest()[:10].upper()}"
    _transactions[tx_ref] = {
        "tx_ref": tx_ref,
        "reference": reference,
        "amount": amount,
        "currency": currency,
        "email": email,
        "name": name,
        "status": "pending",
        "method": "mock",
        "return_url": return_url,
        "callback_url": callback_url,
        "created_at": datetime.utcnow().isoformat(),
    }

    logger.info(f"Gateway initialized {tx_ref}: {amount} {currency}")
    return {
        "status": "success",
        "checkout_url": f"{settings.gateway_checkout_base_url}/{reference}",
    }


def complete_payment(tx_ref: str, status: str = "success") -> None:
    """Simulate the payer finishing (or abandoning) checkout."""
    if tx_ref not in _transactions:
        raise GatewayError("Unknown transaction", {"tx_ref": tx_ref})
    _transactions[tx_ref]["status"] = status


def verify_payment(tx_ref: str) -> Dict[str, Any]:
    """
    Ask the gateway for a transaction's status.

    Returns:
        {"status": str, "reference": str, "amount": int, "currency": str,
         "tx_ref": str, "method": str, "created_at": str}

    Raises:
        GatewayError: transaction unknown to the gateway
    """
    transaction = _transactions.get(tx_ref)
    if transaction is None:
        raise GatewayError("Transaction not found at gateway", {"tx_ref": tx_ref})

    status = "success" if settings.demo_mode else transaction["status"]

    return {
        "status": status,
        "reference": transaction["reference"],
        "amount": transaction["amount"],
        "currency": transaction["currency"],
        "tx_ref": tx_ref,
        "method": transaction["method"],
        "created_at": transaction["created_at"],
    }


def process_refund(
    gateway_ref: str,
    amount: int,
    reason: str,
    reference: str,
) -> Dict[str, Any]:
    """
    Refund a settled charge.

    Mock Behavior: Always succeeds for demo purposes.
    """
    logger.info(f"Gateway refund {reference} on {gateway_ref}: {amount} ({reason})")
    return {
        "status": "success",
        "gateway_ref": gateway_ref,
        "reference": reference,
        "amount": amount,
        "refunded_at": datetime.utcnow().isoformat(),
    }


# ============================================================================
# Transfers (seller payouts)
# ============================================================================

def list_banks() -> Dict[str, Any]:
    """Banks a payout can be sent to."""
    return {"message": "Banks retrieved", "data": [dict(bank) for bank in _BANKS]}


def create_transfer(
    amount: int,
    currency: str,
    account_name: str,
    account_number: str,
    bank_code: str,
    reference: str,
) -> Dict[str, Any]:
    """
    Queue a bank transfer to a seller.

    Returns:
        {"status": "success", "data": {"reference", "gateway_reference", "bank_reference"}}

    Raises:
        GatewayError: invalid amount, unknown bank or reused reference
    """
    if amount <= 0:
        raise GatewayError("Transfer amount must be positive", {"reference": reference, "amount": amount})
    if bank_code not in {bank["id"] for bank in _BANKS}:
        raise GatewayError("Unknown bank", {"reference": reference, "bank_code": bank_code})
    if reference in _transfers:
        raise GatewayError("Duplicate transfer reference", {"reference": reference})

    gateway_reference = f"TR{hashlib.sha256(reference.encode()).hexdigest()[:10].upper()}"
    _transfers[reference] = {
        "reference": reference,
        "gateway_reference": gateway_reference,
        "bank_reference": None,
        "amount": amount,
        "currency": currency,
        "account_name": account_name,
        "account_number": account_number,
        "bank_code": bank_code,
        "status": "pending",
        "created_at": datetime.utcnow().isoformat(),
    }

    logger.info(f"Gateway queued transfer {reference}: {amount} {currency} to bank {bank_code}")
    return {
        "status": "success",
        "data": {"reference": reference, "gateway_reference": gateway_reference, "bank_reference": None},
    }


def complete_transfer(reference: str, status: str = "success", bank_reference: Optional[str] = None) -> None:
    """Simulate the bank settling (or bouncing) a transfer."""
    if reference not in _transfers:
        raise GatewayError("Unknown transfer", {"reference": reference})
    _transfers[reference]["status"] = status
    if bank_reference:
        _transfers[reference]["bank_reference"] = bank_reference


def verify_transfer(reference: str) -> Dict[str, Any]:
    """
    Ask the gateway for a transfer's status.

    Raises:
        GatewayError: transfer unknown to the gateway
    """
    transfer = _transfers.get(reference)
    if transfer is None:
        raise GatewayError("Transfer not found at gateway", {"reference": reference})

    status = "success" if settings.demo_mode else transfer["status"]
    return {
        "status": status,
        "reference": reference,
        "gateway_reference": transfer["gateway_reference"],
        "bank_reference": transfer["bank_reference"],
        "amount": transfer["amount"],
        "currency": transfer["currency"],
    }


def reset() -> None:
    """Forget all transactions and transfers."""
    _transactions.clear()
    _transfers.clear()
