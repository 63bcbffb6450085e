"""
ManualMatchService -- backing service for the manual match wizard.

Responsibility:
    Answer the wizard's questions in order: is this selection compatible
    with the chosen cardinality, which schedules are good candidates for a
    line, what would applying this selection do (plan, issues, before and
    after figures), and finally apply or undo it.

Architecture position:
    Services -- loads snapshots through MatchSelector, delegates math to
    the pure engines and writes through MatchExecutor.

Invariants enforced:
    - ``preview_match_group`` is read-only.
    - ``apply_match_group`` re-runs the preview and applies only when it
      has no error-level issues; the plan applied is the plan previewed.
    - User-correctable problems come back as PreviewIssues, never raised.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from recon_config.schema import MatchingConfig
from recon_engines.allocation import (
    AllocationInput,
    AllocationPlan,
    AllocationPlanner,
    AllocationRequest,
)
from recon_engines.metrics import (
    FlexDecision,
    outstanding_balances,
    project_schedule,
    schedule_flex_decision,
    schedule_status,
)
from recon_engines.ranking import CandidateRanker, RankedCandidate
from recon_engines.selection import SelectionCheck, validate_selection
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.dtos import LineSnapshot, ScheduleSnapshot, ValidationError
from recon_kernel.domain.types import CardinalityType, IssueLevel, ScheduleStatus
from recon_kernel.exceptions import DepositLineNotFoundError
from recon_kernel.logging_config import get_logger
from recon_kernel.models.deposit import Deposit
from recon_kernel.selectors.match_selector import MatchSelector
from recon_services.match_executor import ApplyResult, MatchExecutor, ReverseResult

logger = get_logger("services.manual_match")

ZERO = Decimal("0")


@dataclass(frozen=True)
class PreviewIssue:
    level: IssueLevel
    code: str
    message: str
    line_id: UUID | None = None
    schedule_id: UUID | None = None


@dataclass(frozen=True)
class LineSummary:
    """A selected line's allocation before and after the previewed plan."""

    line_id: UUID
    line_number: int
    usage: Decimal
    commission: Decimal
    usage_allocated_before: Decimal
    commission_allocated_before: Decimal
    usage_allocated_after: Decimal
    commission_allocated_after: Decimal

    @property
    def usage_remaining_after(self) -> Decimal:
        return self.usage - self.usage_allocated_after

    @property
    def commission_remaining_after(self) -> Decimal:
        return self.commission - self.commission_allocated_after


@dataclass(frozen=True)
class ScheduleSummary:
    """
    A selected schedule's balances and status before and after the plan,
    and how any resulting overage would be handled.
    """

    schedule_id: UUID
    status_before: ScheduleStatus
    status_after: ScheduleStatus
    usage_balance_before: Decimal
    usage_balance_after: Decimal
    commission_balance_before: Decimal
    commission_balance_after: Decimal
    flex: FlexDecision | None = None


@dataclass(frozen=True)
class MatchGroupPreview:
    cardinality_type: CardinalityType
    plan: AllocationPlan | None
    issues: tuple[PreviewIssue, ...] = ()
    lines: tuple[LineSummary, ...] = ()
    schedules: tuple[ScheduleSummary, ...] = ()

    @property
    def errors(self) -> tuple[PreviewIssue, ...]:
        return tuple(i for i in self.issues if i.level == IssueLevel.ERROR)

    @property
    def warnings(self) -> tuple[PreviewIssue, ...]:
        return tuple(i for i in self.issues if i.level == IssueLevel.WARNING)

    @property
    def can_apply(self) -> bool:
        return self.plan is not None and not self.errors


@dataclass(frozen=True)
class ManualApplyResult:
    """The preview that was evaluated and, if it was clean, what got applied."""

    preview: MatchGroupPreview
    applied: ApplyResult | None = None

    @property
    def ok(self) -> bool:
        return self.applied is not None


@dataclass(frozen=True)
class _Selection:
    lines: tuple[LineSnapshot, ...] = ()
    schedules: tuple[ScheduleSnapshot, ...] = ()
    issues: list[PreviewIssue] = field(default_factory=list)


def _unique(ids: Sequence[UUID]) -> list[UUID]:
    return list(dict.fromkeys(ids))


def _optional_uuid(value) -> UUID | None:
    if value is None:
        return None
    return value if isinstance(value, UUID) else UUID(str(value))


def _issue_from_error(error: ValidationError) -> PreviewIssue:
    details = error.details or {}
    return PreviewIssue(
        level=IssueLevel.ERROR,
        code=error.code,
        message=error.message,
        line_id=_optional_uuid(details.get("line_id")),
        schedule_id=_optional_uuid(details.get("schedule_id")),
    )


class ManualMatchService:
    """
    Manual selection, preview, apply and undo.

    Non-goals:
        - Does NOT call session.commit() -- caller controls boundaries.
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
        self._executor = MatchExecutor(session, config, self._clock)

    def check_selection(
        self,
        cardinality_type: CardinalityType,
        line_ids: Sequence[UUID],
        schedule_ids: Sequence[UUID],
    ) -> SelectionCheck:
        return validate_selection(
            cardinality_type=cardinality_type,
            line_ids=list(line_ids),
            schedule_ids=list(schedule_ids),
        )

    def suggest_candidates(
        self,
        line_id: UUID,
        *,
        reference_date: date | None = None,
    ) -> list[RankedCandidate]:
        """Ranked schedules for one line, at or above the suggestion threshold."""
        line = self._selector.line_snapshots([line_id]).get(line_id)
        if line is None:
            raise DepositLineNotFoundError(str(line_id))
        config = self._config.for_tenant(line.tenant_id)
        ranker = CandidateRanker(config)
        return ranker.rank(
            line,
            self._selector.eligible_schedules(line.tenant_id),
            reference_date=reference_date,
            min_confidence=config.suggestion_threshold,
        )

    def preview_match_group(
        self,
        deposit_id: UUID,
        line_ids: Sequence[UUID],
        schedule_ids: Sequence[UUID],
        cardinality_type: CardinalityType,
        *,
        usage_amount: Decimal | None = None,
        commission_amount: Decimal | None = None,
        allocations: Sequence[AllocationInput] | None = None,
        accept_overpaid: bool = False,
    ) -> MatchGroupPreview:
        """Compute the plan for a selection without writing anything."""
        selection = self._load_selection(deposit_id, line_ids, schedule_ids)
        if selection.issues:
            return MatchGroupPreview(cardinality_type, None, tuple(selection.issues))

        members = selection.lines or selection.schedules
        tenant_id = members[0].tenant_id if members else None
        config = self._config.for_tenant(tenant_id)
        outcome = AllocationPlanner(config).plan(request=AllocationRequest(
            cardinality_type=cardinality_type,
            lines=selection.lines,
            schedules=selection.schedules,
            usage_amount=usage_amount,
            commission_amount=commission_amount,
            allocations=tuple(allocations) if allocations is not None else None,
            accept_overpaid=accept_overpaid,
        ))
        if not outcome.ok:
            return MatchGroupPreview(
                cardinality_type,
                None,
                tuple(_issue_from_error(e) for e in outcome.errors),
            )

        plan = outcome.plan
        line_summaries = self._line_summaries(selection.lines, plan)
        schedule_summaries, warnings = self._schedule_summaries(
            selection.schedules, plan, config,
        )
        return MatchGroupPreview(
            cardinality_type=cardinality_type,
            plan=plan,
            issues=tuple(warnings),
            lines=line_summaries,
            schedules=schedule_summaries,
        )

    def apply_match_group(
        self,
        deposit_id: UUID,
        line_ids: Sequence[UUID],
        schedule_ids: Sequence[UUID],
        cardinality_type: CardinalityType,
        *,
        actor_id: UUID,
        usage_amount: Decimal | None = None,
        commission_amount: Decimal | None = None,
        allocations: Sequence[AllocationInput] | None = None,
        accept_overpaid: bool = False,
    ) -> ManualApplyResult:
        preview = self.preview_match_group(
            deposit_id,
            line_ids,
            schedule_ids,
            cardinality_type,
            usage_amount=usage_amount,
            commission_amount=commission_amount,
            allocations=allocations,
            accept_overpaid=accept_overpaid,
        )
        if not preview.can_apply:
            logger.info(
                "manual_match_rejected",
                extra={
                    "deposit_id": str(deposit_id),
                    "cardinality_type": cardinality_type.value,
                    "error_codes": [i.code for i in preview.errors],
                },
            )
            return ManualApplyResult(preview=preview)

        applied = self._executor.apply(preview.plan, actor_id=actor_id)
        return ManualApplyResult(preview=preview, applied=applied)

    def reverse_match_group(self, match_group_id: UUID, *, actor_id: UUID) -> ReverseResult:
        return self._executor.reverse(match_group_id, actor_id=actor_id)

    def unmatch_line(self, line_id: UUID, *, actor_id: UUID) -> list[ReverseResult]:
        return self._executor.unmatch_line(line_id, actor_id=actor_id)

    # ------------------------------------------------------------------

    def _load_selection(
        self,
        deposit_id: UUID,
        line_ids: Sequence[UUID],
        schedule_ids: Sequence[UUID],
    ) -> _Selection:
        issues: list[PreviewIssue] = []
        if self._session.get(Deposit, deposit_id) is None:
            issues.append(PreviewIssue(
                IssueLevel.ERROR, "DEPOSIT_NOT_FOUND", f"Deposit {deposit_id} not found",
            ))

        line_ids = _unique(line_ids)
        schedule_ids = _unique(schedule_ids)
        line_map = self._selector.line_snapshots(line_ids) if line_ids else {}
        schedule_map = self._selector.schedule_snapshots(schedule_ids) if schedule_ids else {}

        for line_id in line_ids:
            line = line_map.get(line_id)
            if line is None:
                issues.append(PreviewIssue(
                    IssueLevel.ERROR, "LINE_NOT_FOUND", "Deposit line not found",
                    line_id=line_id,
                ))
            elif line.deposit_id != deposit_id:
                issues.append(PreviewIssue(
                    IssueLevel.ERROR, "LINE_NOT_IN_DEPOSIT",
                    f"Line {line.line_number} belongs to another deposit",
                    line_id=line_id,
                ))
        for schedule_id in schedule_ids:
            if schedule_id not in schedule_map:
                issues.append(PreviewIssue(
                    IssueLevel.ERROR, "SCHEDULE_NOT_FOUND", "Revenue schedule not found",
                    schedule_id=schedule_id,
                ))

        return _Selection(
            lines=tuple(line_map[i] for i in line_ids if i in line_map),
            schedules=tuple(schedule_map[i] for i in schedule_ids if i in schedule_map),
            issues=issues,
        )

    @staticmethod
    def _line_summaries(
        lines: Sequence[LineSnapshot],
        plan: AllocationPlan,
    ) -> tuple[LineSummary, ...]:
        summaries = []
        for line in lines:
            usage = sum((a.usage for a in plan.allocations if a.line_id == line.line_id), ZERO)
            commission = sum(
                (a.commission for a in plan.allocations if a.line_id == line.line_id), ZERO,
            )
            summaries.append(LineSummary(
                line_id=line.line_id,
                line_number=line.line_number,
                usage=line.usage,
                commission=line.commission,
                usage_allocated_before=line.usage_allocated,
                commission_allocated_before=line.commission_allocated,
                usage_allocated_after=line.usage_allocated + usage,
                commission_allocated_after=line.commission_allocated + commission,
            ))
        return tuple(summaries)

    @staticmethod
    def _schedule_summaries(
        schedules: Sequence[ScheduleSnapshot],
        plan: AllocationPlan,
        config: MatchingConfig,
    ) -> tuple[tuple[ScheduleSummary, ...], list[PreviewIssue]]:
        tolerance = config.tolerance
        summaries = []
        warnings = []
        for schedule in schedules:
            pairs = [a for a in plan.allocations if a.schedule_id == schedule.schedule_id]
            after = project_schedule(
                schedule,
                sum((a.usage for a in pairs), ZERO),
                sum((a.commission for a in pairs), ZERO),
                len(pairs),
            )
            usage_before, commission_before = outstanding_balances(schedule)
            usage_after, commission_after = outstanding_balances(after)
            status_after = schedule_status(after, tolerance)
            summaries.append(ScheduleSummary(
                schedule_id=schedule.schedule_id,
                status_before=schedule_status(schedule, tolerance),
                status_after=status_after,
                usage_balance_before=usage_before,
                usage_balance_after=usage_after,
                commission_balance_before=commission_before,
                commission_balance_after=commission_after,
                flex=schedule_flex_decision(
                    after,
                    variance_tolerance=config.flex_variance_tolerance,
                    epsilon=tolerance,
                ),
            ))
            if status_after == ScheduleStatus.OVERPAID:
                warnings.append(PreviewIssue(
                    IssueLevel.WARNING, "schedule_overpaid",
                    "Schedule will be overpaid after this match",
                    schedule_id=schedule.schedule_id,
                ))
            elif status_after == ScheduleStatus.UNDERPAID:
                warnings.append(PreviewIssue(
                    IssueLevel.WARNING, "schedule_underpaid",
                    "Schedule will still be underpaid after this match",
                    schedule_id=schedule.schedule_id,
                ))
        return tuple(summaries), warnings
