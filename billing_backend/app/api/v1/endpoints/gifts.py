"""
Gift API Endpoints.
"""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.db.session import get_db
from billing_backend.app.schemas.gift import (
    GiftCatalogResponse, GiftSendRequest, GiftReceiptResponse, GiftTransactionResponse
)
from billing_backend.app.core.dependencies import Identity, get_current_user
from billing_backend.app.domain.gifts.gift_transfer import GiftTransferProcessor

router = APIRouter(prefix="/gifts", tags=["Gifts"])


@router.get("/catalog", response_model=List[GiftCatalogResponse])
async def list_catalog(
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Active gifts, cheapest first."""
    return await GiftTransferProcessor.list_catalog(db)


@router.post("/send", response_model=GiftReceiptResponse)
async def send_gift(
    request: GiftSendRequest,
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    receipt = await GiftTransferProcessor.send_gift(
        db,
        sender_id=identity.user_id,
        receiver_id=request.receiver_id,
        gift_id=request.gift_id,
        message=request.message,
        call_id=request.call_id,
    )
    return GiftReceiptResponse.model_validate(receipt)


@router.get("/sent", response_model=List[GiftTransactionResponse])
async def list_sent(
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await GiftTransferProcessor.list_sent(db, identity.user_id)


@router.get("/received", response_model=List[GiftTransactionResponse])
async def list_received(
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await GiftTransferProcessor.list_received(db, identity.user_id)
