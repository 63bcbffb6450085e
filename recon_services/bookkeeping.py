"""
Line and deposit bookkeeping derived from Applied matches.

Responsibility:
    Re-derive the cached allocation columns of deposit lines, the status
    and actuals of revenue schedules, and the aggregates of deposits from
    the match table.  Called by the match executor after every apply and
    reverse, and by ``resync_schedule`` for manual correction.

Architecture position:
    Services -- operates on ORM rows inside the caller's transaction.
    Never commits or flushes explicitly; queries autoflush pending rows.

Invariants enforced:
    - A line's ``usage_allocated`` / ``commission_allocated`` equal the sums
      over its Applied matches.
    - ``Ignored`` lines keep their status.
    - A finalized deposit stays ``Completed``.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from recon_engines.metrics import MetricsInput, compute_metrics, resolve_status
from recon_kernel.domain.types import DepositStatus, LineStatus, MatchStatus, ScheduleStatus
from recon_kernel.models.deposit import Deposit, DepositLineItem
from recon_kernel.models.match import DepositLineMatch
from recon_kernel.models.revenue_schedule import RevenueSchedule

ZERO = Decimal("0")


def _applied_totals_by_schedule(
    session: Session, line_id: UUID,
) -> dict[UUID, tuple[Decimal, Decimal]]:
    rows = session.execute(
        select(
            DepositLineMatch.revenue_schedule_id,
            func.sum(DepositLineMatch.allocated_usage),
            func.sum(DepositLineMatch.allocated_commission),
        )
        .where(
            DepositLineMatch.deposit_line_item_id == line_id,
            DepositLineMatch.status == MatchStatus.APPLIED.value,
        )
        .group_by(DepositLineMatch.revenue_schedule_id)
    ).all()
    return {
        schedule_id: (Decimal(usage or 0), Decimal(commission or 0))
        for schedule_id, usage, commission in rows
    }


def derive_line_status(
    line: DepositLineItem,
    usage_allocated: Decimal,
    commission_allocated: Decimal,
    tolerance: Decimal,
) -> LineStatus:
    if line.status == LineStatus.IGNORED.value:
        return LineStatus.IGNORED
    if usage_allocated == 0 and commission_allocated == 0:
        return LineStatus.UNMATCHED
    if (
        line.usage - usage_allocated <= tolerance
        and line.commission - commission_allocated <= tolerance
    ):
        return LineStatus.MATCHED
    return LineStatus.PARTIALLY_MATCHED


def recompute_line(session: Session, line: DepositLineItem, tolerance: Decimal) -> None:
    """
    Refresh a line's allocated amounts, status and primary schedule.

    If the current primary schedule has no Applied match left on the line,
    the primary moves to the schedule carrying the largest allocation
    (ties by schedule id) or is cleared.
    """
    per_schedule = _applied_totals_by_schedule(session, line.id)
    usage = sum((u for u, _ in per_schedule.values()), ZERO)
    commission = sum((c for _, c in per_schedule.values()), ZERO)

    line.usage_allocated = usage
    line.commission_allocated = commission
    line.status = derive_line_status(line, usage, commission, tolerance).value

    if (
        line.primary_revenue_schedule_id is not None
        and line.primary_revenue_schedule_id not in per_schedule
    ):
        line.primary_revenue_schedule_id = None
        if per_schedule:
            line.primary_revenue_schedule_id = min(
                per_schedule,
                key=lambda sid: (-(per_schedule[sid][0] + per_schedule[sid][1]), str(sid)),
            )


def applied_schedule_totals(session: Session, schedule_id: UUID) -> tuple[Decimal, Decimal, int]:
    """(usage, commission, match count) over a schedule's Applied matches."""
    usage, commission, count = session.execute(
        select(
            func.sum(DepositLineMatch.allocated_usage),
            func.sum(DepositLineMatch.allocated_commission),
            func.count(DepositLineMatch.id),
        ).where(
            DepositLineMatch.revenue_schedule_id == schedule_id,
            DepositLineMatch.status == MatchStatus.APPLIED.value,
        )
    ).one()
    return Decimal(usage or 0), Decimal(commission or 0), int(count or 0)


def refresh_schedule_status(
    schedule: RevenueSchedule,
    tolerance: Decimal,
    applied_match_count: int,
) -> ScheduleStatus:
    """Recompute and persist ``schedule.status`` from its current actuals."""
    metrics = compute_metrics(MetricsInput(
        expected_usage_gross=schedule.expected_usage_gross,
        usage_adjustment=schedule.usage_adjustment,
        actual_usage=schedule.actual_usage,
        expected_commission_gross=schedule.expected_commission_gross,
        commission_adjustment=schedule.commission_adjustment,
        actual_commission=schedule.actual_commission,
        expected_commission_rate=schedule.expected_commission_rate,
    ))
    status = resolve_status(metrics, tolerance, applied_match_count > 0)
    schedule.status = status.value
    return status


def recompute_deposit(session: Session, deposit: Deposit) -> None:
    """Refresh a deposit's totals, counts and status from its lines."""
    lines = session.scalars(
        select(DepositLineItem).where(DepositLineItem.deposit_id == deposit.id)
    ).all()

    total_usage = sum((line.usage for line in lines), ZERO)
    total_commission = sum((line.commission for line in lines), ZERO)
    usage_allocated = sum((line.usage_allocated for line in lines), ZERO)
    commission_allocated = sum((line.commission_allocated for line in lines), ZERO)
    matched = sum(1 for line in lines if line.status == LineStatus.MATCHED.value)
    ignored = sum(1 for line in lines if line.status == LineStatus.IGNORED.value)
    partial = sum(1 for line in lines if line.status == LineStatus.PARTIALLY_MATCHED.value)

    deposit.total_items = len(lines)
    deposit.items_reconciled = matched + ignored
    deposit.items_unreconciled = len(lines) - matched - ignored
    deposit.total_usage = total_usage
    deposit.usage_allocated = usage_allocated
    deposit.usage_unallocated = total_usage - usage_allocated
    deposit.total_commission = total_commission
    deposit.commission_allocated = commission_allocated
    deposit.commission_unallocated = total_commission - commission_allocated

    if deposit.reconciled:
        deposit.status = DepositStatus.COMPLETED.value
    elif not lines or (matched + partial == 0 and ignored == 0):
        deposit.status = DepositStatus.PENDING.value
    elif matched + ignored == len(lines):
        deposit.status = DepositStatus.COMPLETED.value
    else:
        deposit.status = DepositStatus.IN_REVIEW.value
