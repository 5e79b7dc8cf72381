"""
Fraud enumerations.
"""

import enum


class Severity(str, enum.Enum):
    """Fraud flag severity, ordered from least to most severe."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]

# Score contributed by one flag of each severity
SEVERITY_WEIGHTS = {
    Severity.LOW: 10,
    Severity.MEDIUM: 25,
    Severity.HIGH: 50,
    Severity.CRITICAL: 100,
}


class FlagType(str, enum.Enum):
    """Heuristic that raised a flag."""
    WITHDRAWAL_VELOCITY = "withdrawal_velocity"
    IMMEDIATE_WITHDRAWAL = "immediate_withdrawal"
    RAPID_DEPOSITS = "rapid_deposits"
    NEW_ACCOUNT_HIGH_DEPOSIT = "new_account_high_deposit"
    LARGE_GIFT = "large_gift"
    CHARGEBACK_HISTORY = "chargeback_history"
    INSUFFICIENT_SETTLEMENT = "insufficient_settlement"
    MANUAL = "manual"


class ReviewAction(str, enum.Enum):
    """Operator action on a flag."""
    DISMISS = "dismiss"
    BLOCK = "block"
    ESCALATE = "escalate"


class Recommendation(str, enum.Enum):
    """Outcome of a fraud assessment."""
    ALLOW = "allow"
    REVIEW = "review"
    BLOCK = "block"
