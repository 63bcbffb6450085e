"""
Module: recon_engines
Responsibility:
    Package entrypoint that re-exports the pure calculation engines used by
    matching: metrics/status derivation, selection validation, candidate
    ranking and allocation planning.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May import recon_kernel (domain, exceptions, logging) and
    recon_config.schema.  MUST NOT import recon_services or open sessions.

Invariants enforced:
    - Purity: engines never read the clock; dates are explicit parameters.
    - Decimal-only arithmetic for money, rates and confidence.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Engine entry points are wrapped with ``@traced_engine`` and emit
    RECON_ENGINE_TRACE records (engine name, version, input fingerprint,
    duration).

Usage:
    from recon_engines.metrics import compute_metrics, resolve_status
    from recon_engines.selection import validate_selection
    from recon_engines.ranking import CandidateRanker
    from recon_engines.allocation import AllocationPlanner, AllocationRequest
"""

from recon_engines.allocation import (
    Allocation,
    AllocationInput,
    AllocationOutcome,
    AllocationPlan,
    AllocationPlanner,
    AllocationRequest,
    check_conservation,
    largest_remainder_split,
)
from recon_engines.metrics import (
    MetricsInput,
    ScheduleMetrics,
    compute_metrics,
    outstanding_balances,
    project_schedule,
    resolve_status,
    schedule_status,
)
from recon_engines.ranking import (
    CandidateRanker,
    MatchSignal,
    RankedCandidate,
    SignalKind,
    amount_variance,
    name_similarity,
)
from recon_engines.selection import (
    SelectionCheck,
    detect_cardinality,
    is_compatible,
    validate_selection,
)
from recon_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    # metrics
    "MetricsInput",
    "ScheduleMetrics",
    "compute_metrics",
    "outstanding_balances",
    "project_schedule",
    "resolve_status",
    "schedule_status",
    # selection
    "SelectionCheck",
    "detect_cardinality",
    "is_compatible",
    "validate_selection",
    # ranking
    "CandidateRanker",
    "MatchSignal",
    "RankedCandidate",
    "SignalKind",
    "amount_variance",
    "name_similarity",
    # allocation
    "Allocation",
    "AllocationInput",
    "AllocationOutcome",
    "AllocationPlan",
    "AllocationPlanner",
    "AllocationRequest",
    "check_conservation",
    "largest_remainder_split",
    # tracing
    "compute_input_fingerprint",
    "traced_engine",
]
