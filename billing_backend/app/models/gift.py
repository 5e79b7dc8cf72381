"""
Gift database models.

Catalog of purchasable gifts and the record of each gift sent.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, ForeignKey, DateTime
from billing_backend.app.db.session import Base


class GiftCatalogItem(Base):
    """Purchasable gift. Inactive items cannot be sent."""
    __tablename__ = "gift_catalog"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    price = Column(BigInteger, nullable=False)
    rarity = Column(String(20), default="common", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<GiftCatalogItem(id={self.id}, name='{self.name}', price={self.price})>"


class GiftTransaction(Base):
    """
    Gift Transaction model.

    Business record of one gift. Money movement itself lives in the
    ledger entries sharing `transfer_id`.
    """
    __tablename__ = "gift_transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    gift_id = Column(Integer, ForeignKey("gift_catalog.id"), nullable=False)
    call_id = Column(Integer, ForeignKey("calls.id"), nullable=True)

    amount = Column(BigInteger, nullable=False)
    receiver_amount = Column(BigInteger, nullable=False)
    platform_fee = Column(BigInteger, nullable=False)
    message = Column(String(255), nullable=True)

    transfer_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<GiftTransaction(id={self.id}, sender={self.sender_id}, receiver={self.receiver_id}, amount={self.amount})>"
