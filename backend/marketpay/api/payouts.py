"""
Payouts API Endpoints

Seller payouts for completed orders, the seller's bank details, and the
gateway's transfer callbacks (status webhook and approval check).
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any, Optional

from ..db.init_db import get_db
from ..models.identity import Identity
from ..models.payouts import PayoutBankAccount, PayoutTransferRequest
from ..services import payout_service
from .deps import get_identity
from .payments import SECURITY_HEADERS

router = APIRouter()


@router.post("/transfer")
async def transfer_endpoint(
    body: PayoutTransferRequest,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> JSONResponse:
    """
    Seller requests the payout for a completed order.

    Returns:
        {"success": true, "payout": {...}}
    """
    payout = await payout_service.transfer_for_order(db, identity, body.order_id)
    return JSONResponse(
        content={"success": True, "payout": payout.model_dump(mode="json")},
        headers=SECURITY_HEADERS,
    )


@router.post("/webhook")
async def transfer_webhook_endpoint(
    request: Request,
    db: AsyncSession = Depends(get_db)
) -> JSONResponse:
    """
    Signed transfer status callback.

    Headers:
        X-Gateway-Signature: hex HMAC-SHA256 of the raw body with the payout webhook secret
    """
    raw_body = await request.body()
    result = await payout_service.process_transfer_webhook(
        db, raw_body, signature=request.headers.get("x-gateway-signature")
    )
    return JSONResponse(content=result, headers=SECURITY_HEADERS)


@router.post("/approval")
async def transfer_approval_endpoint(
    request: Request,
    db: AsyncSession = Depends(get_db)
) -> JSONResponse:
    """
    Gateway asks whether an outgoing transfer is ours before releasing it.

    Headers:
        X-Gateway-Signature: hex HMAC-SHA256 of the raw body with the approval secret
    """
    raw_body = await request.body()
    result = await payout_service.process_transfer_approval(
        db, raw_body, signature=request.headers.get("x-gateway-signature")
    )
    return JSONResponse(content=result, headers=SECURITY_HEADERS)


@router.get("/banks")
async def list_banks_endpoint() -> JSONResponse:
    return JSONResponse(content={"banks": payout_service.list_banks()}, headers=SECURITY_HEADERS)


@router.put("/bank-account")
async def set_bank_account_endpoint(
    body: PayoutBankAccount,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """Where the caller's business receives its payouts."""
    return await payout_service.set_bank_account(db, identity, body)


@router.get("")
async def list_payouts_endpoint(
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """Caller's payouts as a seller, newest first."""
    payouts = await payout_service.list_for_seller(db, identity)
    return {"payouts": payouts, "count": len(payouts)}


@router.get("/orders/{order_id}")
async def get_order_payout_endpoint(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    identity: Optional[Identity] = Depends(get_identity)
) -> Dict[str, Any]:
    """Payout for an order (buyer or seller), or {"payout": null}."""
    payout = await payout_service.get_by_order(db, identity, order_id)
    return {"payout": payout}
