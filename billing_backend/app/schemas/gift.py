"""
Gift Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class GiftCatalogResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    price: int
    rarity: str

    class Config:
        from_attributes = True


class GiftSendRequest(BaseModel):
    receiver_id: int
    gift_id: int
    call_id: Optional[int] = None
    message: Optional[str] = Field(None, max_length=255)


class GiftReceiptResponse(BaseModel):
    gift_transaction_id: int
    transfer_id: str
    amount_paid: int
    amount_received: int
    platform_fee: int

    class Config:
        from_attributes = True


class GiftTransactionResponse(BaseModel):
    id: int
    sender_id: int
    receiver_id: int
    gift_id: int
    call_id: Optional[int]
    amount: int
    receiver_amount: int
    message: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True
