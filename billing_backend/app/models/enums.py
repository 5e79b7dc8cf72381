"""
User roles enumeration.

Defines the role types for the call marketplace.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Operator reviewing fraud flags, chargebacks and payouts
        STREAMER: Paid per minute and through gifts (payee)
        VIEWER: Pays for calls and sends gifts (payer, default role)
    """
    ADMIN = "ADMIN"
    STREAMER = "STREAMER"
    VIEWER = "VIEWER"
