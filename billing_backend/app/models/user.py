"""
User database model.

Registration and profile editing live outside this engine; the model only
carries what billing needs: role, active flag and payout destination.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum
from billing_backend.app.db.session import Base
from billing_backend.app.models.enums import UserRole


class User(Base):
    """
    User model.

    Each user owns exactly one Account (see models/account.py).
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(100), unique=True, index=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    role = Column(Enum(UserRole), default=UserRole.VIEWER, nullable=False)

    # PIX key used as the payout destination for streamers
    payout_key = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', role='{self.role.value}')>"
