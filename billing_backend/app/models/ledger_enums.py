"""
Ledger enumerations.
"""

import enum


class EntryKind(str, enum.Enum):
    """Ledger entry kind enumeration."""
    CALL_PAYMENT = "call_payment"  # Viewer pays for a call (debit)
    CALL_EARNING = "call_earning"  # Streamer earns from a call (credit)
    GIFT_SENT = "gift_sent"  # Sender pays for a gift (debit)
    GIFT_RECEIVED = "gift_received"  # Streamer share of a gift (credit)
    DEPOSIT = "deposit"  # Wallet top-up (credit)
    WITHDRAWAL = "withdrawal"  # Cash out (debit)
    REFUND = "refund"  # Any reversal, either sign
    PAYOUT = "payout"  # D+30 payout hold on streamer balance (debit)
    PLATFORM_FEE = "platform_fee"  # Platform commission (credit)


class EntryStatus(str, enum.Enum):
    """Ledger entry status enumeration."""
    PENDING = "pending"
    COMPLETED = "completed"
    REVERSED = "reversed"


DEBIT_KINDS = frozenset({
    EntryKind.CALL_PAYMENT,
    EntryKind.GIFT_SENT,
    EntryKind.WITHDRAWAL,
    EntryKind.PAYOUT,
})

CREDIT_KINDS = frozenset({
    EntryKind.CALL_EARNING,
    EntryKind.GIFT_RECEIVED,
    EntryKind.DEPOSIT,
    EntryKind.PLATFORM_FEE,
})
