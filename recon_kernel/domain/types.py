"""
recon_kernel.domain.types -- Status and classification enums.

Values are the strings persisted in the status columns, so they must not
be renamed without a data migration.
"""

from __future__ import annotations

from enum import Enum


class ScheduleStatus(str, Enum):
    """Reconciliation status of a revenue schedule."""

    UNRECONCILED = "Unreconciled"  # No money applied yet
    UNDERPAID = "Underpaid"  # Actual short of expected beyond tolerance
    OVERPAID = "Overpaid"  # Actual above expected beyond tolerance
    RECONCILED = "Reconciled"  # Both axes within tolerance


class CardinalityType(str, Enum):
    """Shape of a match selection (lines x schedules)."""

    ONE_TO_ONE = "OneToOne"
    ONE_TO_MANY = "OneToMany"
    MANY_TO_ONE = "ManyToOne"
    MANY_TO_MANY = "ManyToMany"


class MatchStatus(str, Enum):
    """Lifecycle of a single DepositLineMatch row: Applied -> Reversed."""

    APPLIED = "Applied"
    REVERSED = "Reversed"  # Terminal


class MatchGroupStatus(str, Enum):
    """Lifecycle of a match group."""

    ACTIVE = "Active"  # At least one member Applied
    FULLY_REVERSED = "FullyReversed"  # Every member Reversed


class MatchSource(str, Enum):
    """Where a match group originated."""

    MANUAL = "Manual"
    AUTO = "Auto"


class LineStatus(str, Enum):
    """Allocation status of a deposit line item."""

    UNMATCHED = "Unmatched"
    PARTIALLY_MATCHED = "PartiallyMatched"
    MATCHED = "Matched"
    IGNORED = "Ignored"  # Set by reviewers; never auto-matched


class DepositStatus(str, Enum):
    """Reconciliation progress of a whole deposit."""

    PENDING = "Pending"
    IN_REVIEW = "InReview"
    COMPLETED = "Completed"


class IssueLevel(str, Enum):
    """Severity of a match preview issue. Errors block apply."""

    ERROR = "error"
    WARNING = "warning"


class FlexAction(str, Enum):
    """What to do about a schedule's variance after money is applied."""

    NONE = "none"
    AUTO_ADJUST = "auto_adjust"  # Overage within the flex tolerance
    PROMPT = "prompt"  # Reviewer chooses a FlexPromptOption
    AUTO_CHARGEBACK = "auto_chargeback"  # Negative line involved


class FlexPromptOption(str, Enum):
    """Choices offered when an overage exceeds the flex tolerance."""

    ADJUST = "Adjust"
    MANUAL = "Manual"
    FLEX_PRODUCT = "FlexProduct"
