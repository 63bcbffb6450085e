"""
recon_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines (recon_engines/)
    with database sessions.  This is the only layer that holds sessions,
    takes row locks or reads the wall clock.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        recon_services/ -> recon_engines/  (allowed)
        recon_services/ -> recon_kernel/   (allowed)
        recon_engines/  -> recon_services/ (FORBIDDEN)
        recon_kernel/   -> recon_services/ (FORBIDDEN)

Invariants enforced:
    - Services never commit; the caller (or ``run_with_retry``) owns the
      transaction boundary.
    - MatchExecutor is the only writer of schedule actuals and status.
"""

from recon_services.auto_match import (
    AutoMatchBucket,
    AutoMatchCandidate,
    AutoMatchConfirmResult,
    AutoMatchOrchestrator,
    AutoMatchPreview,
    AutoMatchRunResult,
    ConfirmFailure,
)
from recon_services.deposit_lifecycle import DepositLifecycleService, FinalizeResult
from recon_services.manual_match import (
    LineSummary,
    ManualApplyResult,
    ManualMatchService,
    MatchGroupPreview,
    PreviewIssue,
    ScheduleSummary,
)
from recon_services.match_executor import (
    ApplyResult,
    MatchExecutor,
    ReverseNotice,
    ReverseResult,
)
from recon_services.retry import run_with_retry

__all__ = [
    "ApplyResult",
    "AutoMatchBucket",
    "AutoMatchCandidate",
    "AutoMatchConfirmResult",
    "AutoMatchOrchestrator",
    "AutoMatchPreview",
    "AutoMatchRunResult",
    "ConfirmFailure",
    "DepositLifecycleService",
    "FinalizeResult",
    "LineSummary",
    "ManualApplyResult",
    "ManualMatchService",
    "MatchExecutor",
    "MatchGroupPreview",
    "PreviewIssue",
    "ReverseNotice",
    "ReverseResult",
    "ScheduleSummary",
    "run_with_retry",
]
