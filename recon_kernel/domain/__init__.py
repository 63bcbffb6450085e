"""Pure domain layer: enums, snapshots, clock. No I/O."""

from recon_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from recon_kernel.domain.dtos import (
    LineSnapshot,
    ScheduleSnapshot,
    ValidationError,
)
from recon_kernel.domain.types import (
    CardinalityType,
    DepositStatus,
    FlexAction,
    FlexPromptOption,
    IssueLevel,
    LineStatus,
    MatchGroupStatus,
    MatchSource,
    MatchStatus,
    ScheduleStatus,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "LineSnapshot",
    "ScheduleSnapshot",
    "ValidationError",
    "CardinalityType",
    "DepositStatus",
    "FlexAction",
    "FlexPromptOption",
    "IssueLevel",
    "LineStatus",
    "MatchGroupStatus",
    "MatchSource",
    "MatchStatus",
    "ScheduleStatus",
]
