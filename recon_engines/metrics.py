"""
Module: recon_engines.metrics
Responsibility:
    Pure computation of a revenue schedule's net expected figures, actual
    vs. expected differences, commission rate fractions, the
    reconciliation status derived from them, and the flex decision for a
    schedule left overpaid by an allocation.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Used for read-model
    projection (previews) and by the match executor to re-derive status
    after every allocation change.

Invariants enforced:
    - Decimal in, Decimal out.  Rates are None whenever either side is
      zero or missing, so no NaN/Infinity can reach callers.
    - Same input, same output (status derivation is deterministic).
    - Reconciled iff both differences are within the absolute tolerance.

Failure modes:
    - None.  Missing inputs degrade to None/zero as documented on
      compute_metrics().
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal

from recon_engines.tracer import traced_engine
from recon_kernel.db.types import to_decimal
from recon_kernel.domain.dtos import ScheduleSnapshot
from recon_kernel.domain.types import FlexAction, FlexPromptOption, ScheduleStatus

ZERO = Decimal("0")
ONE = Decimal("1")
RATE_QUANTUM = Decimal("0.0000000001")


@dataclass(frozen=True)
class MetricsInput:
    """
    Nullable money figures for one schedule.

    ``expected_usage_net`` / ``expected_commission_net`` are used only
    when neither gross nor adjustment is supplied for that axis.
    """

    expected_usage_gross: Decimal | None = None
    usage_adjustment: Decimal | None = None
    expected_usage_net: Decimal | None = None
    actual_usage: Decimal | None = None
    expected_commission_gross: Decimal | None = None
    commission_adjustment: Decimal | None = None
    expected_commission_net: Decimal | None = None
    actual_commission: Decimal | None = None
    expected_commission_rate: Decimal | None = None

    @classmethod
    def from_schedule(cls, schedule: ScheduleSnapshot) -> MetricsInput:
        return cls(
            expected_usage_gross=schedule.expected_usage_gross,
            usage_adjustment=schedule.usage_adjustment,
            actual_usage=schedule.actual_usage,
            expected_commission_gross=schedule.expected_commission_gross,
            commission_adjustment=schedule.commission_adjustment,
            actual_commission=schedule.actual_commission,
            expected_commission_rate=schedule.expected_commission_rate,
        )


@dataclass(frozen=True)
class ScheduleMetrics:
    """Derived figures for one schedule.  Differences are expected - actual."""

    expected_usage_net: Decimal | None
    actual_usage: Decimal
    usage_difference: Decimal
    expected_commission_net: Decimal | None
    actual_commission: Decimal
    commission_difference: Decimal
    expected_rate_fraction: Decimal | None
    actual_rate_fraction: Decimal | None
    commission_rate_difference_fraction: Decimal | None


def _net(gross: Decimal | None, adjustment: Decimal | None, net: Decimal | None) -> Decimal | None:
    if gross is None and adjustment is None:
        return net
    return (gross or ZERO) + (adjustment or ZERO)


def _ratio(numerator: Decimal | None, denominator: Decimal | None) -> Decimal | None:
    if numerator is None or denominator is None:
        return None
    if numerator == 0 or denominator == 0:
        return None
    return (numerator / denominator).quantize(RATE_QUANTUM)


@traced_engine("metrics", "1.0")
def compute_metrics(data: MetricsInput) -> ScheduleMetrics:
    """
    Compute net expected figures, differences and rate fractions.

    - Usage net is gross + adjustment when either is present, otherwise
      the supplied net (or None).
    - Commission gross falls back to usage gross x expected rate; the
      commission net then follows the same rule as usage.
    - Differences treat missing figures as zero.
    - The expected rate is the supplied rate, else commission net / usage
      net.  The actual rate is actual commission / actual usage.
    """
    usage_gross = to_decimal(data.expected_usage_gross)
    usage_adjustment = to_decimal(data.usage_adjustment)
    rate = to_decimal(data.expected_commission_rate)

    usage_net = _net(usage_gross, usage_adjustment, to_decimal(data.expected_usage_net))

    commission_gross = to_decimal(data.expected_commission_gross)
    if commission_gross is None and usage_gross is not None and rate is not None:
        commission_gross = usage_gross * rate
    commission_net = _net(
        commission_gross,
        to_decimal(data.commission_adjustment),
        to_decimal(data.expected_commission_net),
    )

    actual_usage = to_decimal(data.actual_usage) or ZERO
    actual_commission = to_decimal(data.actual_commission) or ZERO

    expected_rate = rate.quantize(RATE_QUANTUM) if rate is not None else _ratio(
        commission_net, usage_net
    )
    actual_rate = _ratio(actual_commission, actual_usage)
    rate_difference = None
    if expected_rate is not None and actual_rate is not None:
        rate_difference = actual_rate - expected_rate

    return ScheduleMetrics(
        expected_usage_net=usage_net,
        actual_usage=actual_usage,
        usage_difference=(usage_net or ZERO) - actual_usage,
        expected_commission_net=commission_net,
        actual_commission=actual_commission,
        commission_difference=(commission_net or ZERO) - actual_commission,
        expected_rate_fraction=expected_rate,
        actual_rate_fraction=actual_rate,
        commission_rate_difference_fraction=rate_difference,
    )


def resolve_status(
    metrics: ScheduleMetrics,
    tolerance: Decimal,
    has_applied_matches: bool,
) -> ScheduleStatus:
    """
    Map differences to a schedule status.

    Unreconciled until something has been applied.  Then Reconciled when
    both |differences| <= tolerance, Overpaid when actual exceeds expected
    beyond tolerance on either axis, Underpaid otherwise.
    """
    if not has_applied_matches:
        return ScheduleStatus.UNRECONCILED
    usage_diff = metrics.usage_difference
    commission_diff = metrics.commission_difference
    if abs(usage_diff) <= tolerance and abs(commission_diff) <= tolerance:
        return ScheduleStatus.RECONCILED
    if usage_diff < -tolerance or commission_diff < -tolerance:
        return ScheduleStatus.OVERPAID
    return ScheduleStatus.UNDERPAID


def schedule_status(schedule: ScheduleSnapshot, tolerance: Decimal) -> ScheduleStatus:
    """Status of a schedule snapshot as it stands."""
    metrics = compute_metrics(MetricsInput.from_schedule(schedule))
    return resolve_status(metrics, tolerance, schedule.applied_match_count > 0)


def outstanding_balances(schedule: ScheduleSnapshot) -> tuple[Decimal, Decimal]:
    """(usage balance, commission balance): expected net minus actual."""
    metrics = compute_metrics(MetricsInput.from_schedule(schedule))
    return metrics.usage_difference, metrics.commission_difference


def project_schedule(
    schedule: ScheduleSnapshot,
    usage_delta: Decimal,
    commission_delta: Decimal,
    match_count_delta: int,
) -> ScheduleSnapshot:
    """Snapshot of ``schedule`` after adding (or removing) allocations."""
    return replace(
        schedule,
        actual_usage=schedule.actual_usage + usage_delta,
        actual_commission=schedule.actual_commission + commission_delta,
        applied_match_count=max(schedule.applied_match_count + match_count_delta, 0),
    )


@dataclass(frozen=True)
class FlexDecision:
    """
    How a schedule's variance should be handled after an allocation.

    ``overage`` and ``tolerance_amount`` refer to whichever axis drove the
    decision: usage, or commission when usage shows no overage.
    """

    action: FlexAction
    usage_overage: Decimal
    usage_underpayment: Decimal
    overage: Decimal
    tolerance_amount: Decimal
    prompt_options: tuple[FlexPromptOption, ...] = ()

    @property
    def overage_above_tolerance(self) -> bool:
        return self.action == FlexAction.PROMPT


@traced_engine("flex_decision", "1.0")
def evaluate_flex_decision(
    metrics: ScheduleMetrics,
    *,
    variance_tolerance: Decimal,
    epsilon: Decimal,
    has_negative_line: bool = False,
    bonus_like: bool = False,
) -> FlexDecision:
    """
    Classify a schedule's variance.

    - AUTO_CHARGEBACK when a negative line is involved.
    - NONE when neither axis is overpaid by more than ``epsilon``.
    - AUTO_ADJUST when the overage is within ``variance_tolerance`` (a
      fraction of expected net, clamped to [0, 1]; never below
      ``epsilon``).
    - PROMPT otherwise.  FlexProduct is not offered for bonus-like
      schedules.

    Usage is judged first; commission is judged only when usage has no
    overage.  Underpayments never trigger a flex action.
    """
    variance_tolerance = min(max(variance_tolerance, ZERO), ONE)
    usage_balance = metrics.usage_difference
    usage_overage = -usage_balance if usage_balance < 0 else ZERO
    usage_underpayment = usage_balance if usage_balance > 0 else ZERO

    overage = usage_overage
    tolerance_amount = max(abs(metrics.expected_usage_net or ZERO) * variance_tolerance, epsilon)
    if usage_overage <= epsilon:
        commission_balance = metrics.commission_difference
        overage = -commission_balance if commission_balance < 0 else ZERO
        tolerance_amount = max(
            abs(metrics.expected_commission_net or ZERO) * variance_tolerance, epsilon,
        )

    def decision(action: FlexAction, options=()) -> FlexDecision:
        return FlexDecision(
            action=action,
            usage_overage=usage_overage,
            usage_underpayment=usage_underpayment,
            overage=overage,
            tolerance_amount=tolerance_amount,
            prompt_options=tuple(options),
        )

    if has_negative_line:
        return decision(FlexAction.AUTO_CHARGEBACK)
    if overage <= epsilon:
        return decision(FlexAction.NONE)
    if overage <= tolerance_amount + epsilon:
        return decision(FlexAction.AUTO_ADJUST)
    options = [FlexPromptOption.ADJUST, FlexPromptOption.MANUAL]
    if not bonus_like:
        options.append(FlexPromptOption.FLEX_PRODUCT)
    return decision(FlexAction.PROMPT, options)


def schedule_flex_decision(
    schedule: ScheduleSnapshot,
    *,
    variance_tolerance: Decimal,
    epsilon: Decimal,
    has_negative_line: bool = False,
) -> FlexDecision:
    """Flex decision for a schedule snapshot as it stands."""
    return evaluate_flex_decision(
        compute_metrics(MetricsInput.from_schedule(schedule)),
        variance_tolerance=variance_tolerance,
        epsilon=epsilon,
        has_negative_line=has_negative_line,
    )
