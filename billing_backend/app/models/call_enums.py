"""
Call-related enumerations.
"""

import enum


class CallStatus(str, enum.Enum):
    """Call status enumeration."""
    PENDING = "pending"  # Requested, not yet accepted
    ACTIVE = "active"  # Meter running
    ENDED = "ended"  # Settled
    CANCELLED = "cancelled"  # Dropped before acceptance
