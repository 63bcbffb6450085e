"""
MatchExecutor -- applies and reverses allocation plans.

Responsibility:
    Persist an AllocationPlan as one DepositMatchGroup plus one
    DepositLineMatch per (line, schedule) pair, move the money onto the
    revenue schedules' actuals, and re-derive schedule status, line
    bookkeeping and deposit aggregates.  Reverse flips a whole group to
    Reversed and takes the money back out.

Architecture position:
    Services -- imperative shell around the pure engines.  The only writer
    of schedule actuals/status and line allocation columns.

Invariants enforced:
    - Atomicity: every apply/reverse attempt runs inside one SAVEPOINT.
      Any failure rolls the savepoint back, so no half-applied group is
      ever visible.  Conflicting attempts are re-run up to
      ``config.max_retries`` times.
    - No double allocation: the plan is re-checked against the locked line
      rows; a line never carries more Applied allocation than its amount
      plus tolerance.
    - Lock order: deposit lines, then revenue schedules (each by id), then
      the deposit row.  Concurrent applies on disjoint lines and schedules
      only meet at the deposit aggregate update.
    - Match rows are never deleted; reversal is a status flip.

Failure modes:
    - LineOverallocationError: a concurrent apply consumed the balance.
    - LineLockedError: a line belongs to a finalized deposit.
    - DepositLineNotFoundError / RevenueScheduleNotFoundError.
    - ConcurrentModificationError: an optimistic version check still
      failed after ``max_retries`` savepoint attempts.
    - ConservationViolationError: the plan does not conserve its totals.

Audit relevance:
    Groups and matches carry created_by_id; reversal stamps reversed_at
    and reversed_by_id.  Reversed rows stay queryable for audit.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from recon_config.schema import MatchingConfig
from recon_engines.allocation import AllocationPlan, check_conservation
from recon_engines.metrics import FlexDecision, schedule_flex_decision
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.types import (
    CardinalityType,
    MatchGroupStatus,
    MatchSource,
    MatchStatus,
    ScheduleStatus,
)
from recon_kernel.exceptions import (
    DepositLineNotFoundError,
    DepositNotFoundError,
    LineLockedError,
    LineOverallocationError,
    RevenueScheduleNotFoundError,
)
from recon_kernel.logging_config import LogContext, get_logger
from recon_kernel.models.deposit import Deposit, DepositLineItem
from recon_kernel.models.match import DepositLineMatch, DepositMatchGroup
from recon_kernel.models.revenue_schedule import RevenueSchedule
from recon_kernel.selectors.match_selector import MatchSelector
from recon_services.bookkeeping import (
    applied_schedule_totals,
    recompute_deposit,
    recompute_line,
    refresh_schedule_status,
)
from recon_services.retry import retry_in_savepoint

logger = get_logger("services.match_executor")

ZERO = Decimal("0")

_PRIMARY_LINK_TYPES = frozenset({CardinalityType.ONE_TO_ONE, CardinalityType.MANY_TO_ONE})


class ReverseNotice(str, Enum):
    """Why a reverse call did nothing."""

    NOT_FOUND = "NOT_FOUND"
    ALREADY_REVERSED = "ALREADY_REVERSED"


@dataclass(frozen=True)
class ApplyResult:
    """
    Identifiers created by one apply, plus each touched schedule's status
    and flex decision after the money landed.
    """

    match_group_id: UUID
    match_ids: tuple[UUID, ...]
    schedule_statuses: dict[UUID, ScheduleStatus] = field(default_factory=dict)
    flex_decisions: dict[UUID, FlexDecision] = field(default_factory=dict)


@dataclass(frozen=True)
class ReverseResult:
    """
    Outcome of a reverse call.

    ``notice`` is set (and ``reversed_count`` is 0) when the group did not
    exist or had no Applied members; that is a successful no-op.
    """

    match_group_id: UUID
    reversed_count: int
    notice: ReverseNotice | None = None
    schedule_statuses: dict[UUID, ScheduleStatus] = field(default_factory=dict)

    @property
    def noop(self) -> bool:
        return self.notice is not None


class MatchExecutor:
    """
    Transactional apply/reverse of match groups.

    Contract:
        ``apply(plan)`` persists a plan produced by the AllocationPlanner.
        ``reverse(match_group_id)`` undoes a whole group.  Both run in a
        SAVEPOINT on the caller's session.

    Guarantees:
        - Apply then reverse restores every schedule's actuals exactly.
        - Schedule status is recomputed by the metrics calculator after
          every change.

    Non-goals:
        - Does NOT call session.commit() -- caller controls boundaries.
        - Does NOT retry past ``config.max_retries``; callers that own the
          transaction can add an outer recon_services.retry.run_with_retry.
    """

    def __init__(
        self,
        session: Session,
        config: MatchingConfig,
        clock: Clock | None = None,
    ):
        self._session = session
        self._config = config
        self._clock = clock or SystemClock()
        self._selector = MatchSelector(session)

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(
        self,
        plan: AllocationPlan,
        *,
        actor_id: UUID,
        source: MatchSource = MatchSource.MANUAL,
        confidence: Decimal | None = None,
        reasons: tuple[str, ...] = (),
    ) -> ApplyResult:
        """Persist ``plan`` as a new match group.

        Raises:
            LineOverallocationError: A line's balance was consumed since
                the plan was computed.
            LineLockedError: A line is locked by a finalized deposit.
            ConcurrentModificationError: A version check kept failing.
        """
        config = self._config.for_tenant(plan.tenant_id)
        result = retry_in_savepoint(
            self._session,
            lambda: self._apply(plan, config, actor_id, source, confidence, reasons),
            config.max_retries,
            entity_type="DepositMatchGroup",
        )

        with LogContext.bind(
            match_group_id=str(result.match_group_id),
            deposit_id=str(plan.deposit_id),
            actor_id=str(actor_id),
        ):
            logger.info(
                "match_group_applied",
                extra={
                    "cardinality_type": plan.cardinality_type.value,
                    "source": source.value,
                    "match_count": len(result.match_ids),
                    "usage_total": str(plan.allocated_usage),
                    "commission_total": str(plan.allocated_commission),
                    "schedule_statuses": {
                        str(k): v.value for k, v in result.schedule_statuses.items()
                    },
                    "flex_actions": {
                        str(k): v.action.value for k, v in result.flex_decisions.items()
                    },
                },
            )
        return result

    def _apply(
        self,
        plan: AllocationPlan,
        config: MatchingConfig,
        actor_id: UUID,
        source: MatchSource,
        confidence: Decimal | None,
        reasons: tuple[str, ...],
    ) -> ApplyResult:
        tolerance = config.tolerance
        check_conservation(plan, tolerance)

        line_ids = sorted({a.line_id for a in plan.allocations}, key=str)
        schedule_ids = sorted({a.schedule_id for a in plan.allocations}, key=str)
        lines = self._lock_lines(line_ids)
        schedules = self._lock_schedules(schedule_ids)

        for line in lines.values():
            if line.reconciled:
                raise LineLockedError(str(line.id))
        self._check_line_capacity(plan, lines, tolerance)

        group = DepositMatchGroup(
            id=uuid4(),
            deposit_id=plan.deposit_id,
            tenant_id=plan.tenant_id,
            cardinality_type=plan.cardinality_type.value,
            source=source.value,
            status=MatchGroupStatus.ACTIVE.value,
            created_by_id=actor_id,
        )
        self._session.add(group)

        match_ids = []
        for allocation in plan.allocations:
            match = DepositLineMatch(
                id=uuid4(),
                match_group=group,
                tenant_id=plan.tenant_id,
                deposit_line_item_id=allocation.line_id,
                revenue_schedule_id=allocation.schedule_id,
                cardinality_type=plan.cardinality_type.value,
                allocated_usage=allocation.usage,
                allocated_commission=allocation.commission,
                status=MatchStatus.APPLIED.value,
                source=source.value,
                confidence=confidence,
                reasons=list(reasons),
                created_by_id=actor_id,
            )
            self._session.add(match)
            match_ids.append(match.id)

            schedule = schedules[allocation.schedule_id]
            schedule.actual_usage = (schedule.actual_usage or ZERO) + allocation.usage
            schedule.actual_commission = (
                (schedule.actual_commission or ZERO) + allocation.commission
            )
            schedule.updated_by_id = actor_id

        if plan.cardinality_type in _PRIMARY_LINK_TYPES:
            for line in lines.values():
                if line.primary_revenue_schedule_id is None:
                    line.primary_revenue_schedule_id = plan.schedule_ids[0]

        statuses = self._refresh(schedules, lines, plan.deposit_id, tolerance, actor_id)
        return ApplyResult(
            match_group_id=group.id,
            match_ids=tuple(match_ids),
            schedule_statuses=statuses,
            flex_decisions={
                sid: schedule_flex_decision(
                    schedule.to_snapshot(),
                    variance_tolerance=config.flex_variance_tolerance,
                    epsilon=tolerance,
                )
                for sid, schedule in schedules.items()
            },
        )

    def _check_line_capacity(
        self,
        plan: AllocationPlan,
        lines: dict[UUID, DepositLineItem],
        tolerance: Decimal,
    ) -> None:
        requested: dict[UUID, list[Decimal]] = defaultdict(lambda: [ZERO, ZERO])
        for allocation in plan.allocations:
            requested[allocation.line_id][0] += allocation.usage
            requested[allocation.line_id][1] += allocation.commission

        for line_id, (usage, commission) in requested.items():
            line = lines[line_id]
            if line.deposit_id != plan.deposit_id:
                raise DepositLineNotFoundError(str(line_id))
            for axis, total, already, amount in (
                ("usage", line.usage, line.usage_allocated or ZERO, usage),
                ("commission", line.commission, line.commission_allocated or ZERO, commission),
            ):
                if already + amount > total + tolerance:
                    logger.error(
                        "line_overallocation_blocked",
                        extra={
                            "line_id": str(line_id),
                            "axis": axis,
                            "line_total": str(total),
                            "already_allocated": str(already),
                            "requested": str(amount),
                            "plan": plan.to_log_context(),
                        },
                    )
                    raise LineOverallocationError(
                        line_id=str(line_id),
                        axis=axis,
                        line_total=total,
                        allocated=already + amount,
                        tolerance=tolerance,
                    )

    # ------------------------------------------------------------------
    # Reverse
    # ------------------------------------------------------------------

    def reverse(self, match_group_id: UUID, *, actor_id: UUID) -> ReverseResult:
        """Reverse every Applied match of a group.

        Idempotent: an unknown or already-reversed group returns a result
        carrying a notice instead of raising.

        Raises:
            LineLockedError: A member line belongs to a finalized deposit.
            ConcurrentModificationError: A version check kept failing.
        """
        result = retry_in_savepoint(
            self._session,
            lambda: self._reverse(match_group_id, actor_id),
            self._config.max_retries,
            entity_type="DepositMatchGroup",
            entity_id=str(match_group_id),
        )
        self._log_reverse(result, actor_id)
        return result

    def _log_reverse(self, result: ReverseResult, actor_id: UUID) -> None:
        with LogContext.bind(match_group_id=str(result.match_group_id), actor_id=str(actor_id)):
            if result.noop:
                logger.info(
                    "match_group_reverse_noop",
                    extra={"notice": result.notice.value},
                )
            else:
                logger.info(
                    "match_group_reversed",
                    extra={
                        "reversed_count": result.reversed_count,
                        "schedule_statuses": {
                            str(k): v.value for k, v in result.schedule_statuses.items()
                        },
                    },
                )

    def _reverse(self, match_group_id: UUID, actor_id: UUID) -> ReverseResult:
        group = self._session.scalars(
            select(DepositMatchGroup)
            .where(DepositMatchGroup.id == match_group_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one_or_none()
        if group is None:
            return ReverseResult(match_group_id, 0, ReverseNotice.NOT_FOUND)

        matches = self._session.scalars(
            select(DepositLineMatch)
            .where(
                DepositLineMatch.match_group_id == match_group_id,
                DepositLineMatch.status == MatchStatus.APPLIED.value,
            )
            .order_by(DepositLineMatch.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).all()
        if not matches:
            return ReverseResult(match_group_id, 0, ReverseNotice.ALREADY_REVERSED)

        config = self._config.for_tenant(group.tenant_id)
        lines = self._lock_lines(sorted({m.deposit_line_item_id for m in matches}, key=str))
        schedules = self._lock_schedules(sorted({m.revenue_schedule_id for m in matches}, key=str))
        for line in lines.values():
            if line.reconciled:
                raise LineLockedError(str(line.id))

        now = self._clock.now()
        for match in matches:
            match.status = MatchStatus.REVERSED.value
            match.reversed_at = now
            match.updated_by_id = actor_id

            schedule = schedules[match.revenue_schedule_id]
            schedule.actual_usage = (schedule.actual_usage or ZERO) - match.allocated_usage
            schedule.actual_commission = (
                (schedule.actual_commission or ZERO) - match.allocated_commission
            )
            schedule.updated_by_id = actor_id

        group.status = MatchGroupStatus.FULLY_REVERSED.value
        group.reversed_at = now
        group.reversed_by_id = actor_id
        group.updated_by_id = actor_id

        statuses = self._refresh(schedules, lines, group.deposit_id, config.tolerance, actor_id)
        return ReverseResult(
            match_group_id=match_group_id,
            reversed_count=len(matches),
            schedule_statuses=statuses,
        )

    def unmatch_line(self, line_id: UUID, *, actor_id: UUID) -> list[ReverseResult]:
        """Reverse every Active group touching a line, oldest first, atomically.

        Per-group events are logged only after every group is reversed.
        """
        line = self._session.get(DepositLineItem, line_id)
        if line is None:
            raise DepositLineNotFoundError(str(line_id))
        if line.reconciled:
            raise LineLockedError(str(line_id))

        group_ids = self._selector.active_group_ids_for_line(line_id)
        results = retry_in_savepoint(
            self._session,
            lambda: [self._reverse(gid, actor_id) for gid in group_ids],
            self._config.max_retries,
            entity_type="DepositLineItem",
            entity_id=str(line_id),
        )
        for result in results:
            self._log_reverse(result, actor_id)
        logger.info(
            "line_unmatched",
            extra={
                "line_id": str(line_id),
                "group_count": len(results),
                "reversed_count": sum(r.reversed_count for r in results),
            },
        )
        return results

    # ------------------------------------------------------------------
    # Resync
    # ------------------------------------------------------------------

    def resync_schedule(self, schedule_id: UUID, *, actor_id: UUID) -> ScheduleStatus:
        """Rebuild a schedule's actuals and status from its Applied matches."""
        with self._session.begin_nested():
            schedules = self._lock_schedules([schedule_id])
            schedule = schedules[schedule_id]
            config = self._config.for_tenant(schedule.tenant_id)
            usage, commission, count = applied_schedule_totals(self._session, schedule_id)

            drift_usage = usage - (schedule.actual_usage or ZERO)
            drift_commission = commission - (schedule.actual_commission or ZERO)
            if drift_usage or drift_commission:
                logger.warning(
                    "schedule_actuals_drift",
                    extra={
                        "schedule_id": str(schedule_id),
                        "usage_drift": str(drift_usage),
                        "commission_drift": str(drift_commission),
                    },
                )
                schedule.actual_usage = usage
                schedule.actual_commission = commission
                schedule.updated_by_id = actor_id
            status = refresh_schedule_status(schedule, config.tolerance, count)
        logger.info(
            "schedule_resynced",
            extra={"schedule_id": str(schedule_id), "status": status.value},
        )
        return status

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_lines(self, line_ids: list[UUID]) -> dict[UUID, DepositLineItem]:
        rows = self._session.scalars(
            select(DepositLineItem)
            .where(DepositLineItem.id.in_(line_ids))
            .order_by(DepositLineItem.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).all()
        found = {row.id: row for row in rows}
        for line_id in line_ids:
            if line_id not in found:
                raise DepositLineNotFoundError(str(line_id))
        return found

    def _lock_schedules(self, schedule_ids: list[UUID]) -> dict[UUID, RevenueSchedule]:
        rows = self._session.scalars(
            select(RevenueSchedule)
            .where(RevenueSchedule.id.in_(schedule_ids))
            .order_by(RevenueSchedule.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).all()
        found = {row.id: row for row in rows if row.deleted_at is None}
        for schedule_id in schedule_ids:
            if schedule_id not in found:
                raise RevenueScheduleNotFoundError(str(schedule_id))
        return found

    def _refresh(
        self,
        schedules: dict[UUID, RevenueSchedule],
        lines: dict[UUID, DepositLineItem],
        deposit_id: UUID,
        tolerance: Decimal,
        actor_id: UUID,
    ) -> dict[UUID, ScheduleStatus]:
        counts = self._selector.applied_match_counts(list(schedules))
        statuses = {
            sid: refresh_schedule_status(schedule, tolerance, counts.get(sid, 0))
            for sid, schedule in schedules.items()
        }
        for line in lines.values():
            recompute_line(self._session, line, tolerance)
            line.updated_by_id = actor_id

        deposit = self._session.scalars(
            select(Deposit)
            .where(Deposit.id == deposit_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one_or_none()
        if deposit is None:
            raise DepositNotFoundError(str(deposit_id))
        recompute_deposit(self._session, deposit)
        deposit.updated_by_id = actor_id
        self._session.flush()
        return statuses
