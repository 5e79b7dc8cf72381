"""
Billing enumerations for chargebacks and streamer payouts.
"""

import enum


class ChargebackStatus(str, enum.Enum):
    """Chargeback status enumeration."""
    PENDING = "pending"  # Filed, waiting for an operator
    INVESTIGATING = "investigating"  # Picked up by an operator
    ACCEPTED = "accepted"  # Refunded (fully or partially)
    REJECTED = "rejected"  # Upheld, no ledger change


class ChargebackDecision(str, enum.Enum):
    """Operator decision on a chargeback."""
    REFUND = "refund"
    KEEP = "keep"
    PARTIAL = "partial"


class ScheduledPaymentStatus(str, enum.Enum):
    """Scheduled payment status enumeration."""
    PENDING = "pending"  # Entries claimed, gateway not yet confirmed
    PAID = "paid"  # Gateway confirmed the transfer
    FAILED = "failed"  # Gateway failed; entries released for the next sweep
    CANCELLED = "cancelled"


OPEN_CHARGEBACK_STATUSES = (ChargebackStatus.PENDING, ChargebackStatus.INVESTIGATING)
