"""
Module: recon_kernel.selectors.match_selector
Responsibility: Read paths used by ranking, previews and reversal: eligible
    schedules for a tenant, deposit lines, and applied match records.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Soft-deleted and Reconciled schedules are never returned as
      eligible.  Finer compatibility (account/vendor/distributor) is the
      candidate ranker's job.
    - Applied match counts come from the match table, not from cached
      status columns.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from recon_kernel.domain.dtos import LineSnapshot, ScheduleSnapshot
from recon_kernel.domain.types import (
    CardinalityType,
    MatchSource,
    MatchStatus,
    ScheduleStatus,
)
from recon_kernel.models.deposit import DepositLineItem
from recon_kernel.models.match import DepositLineMatch
from recon_kernel.models.revenue_schedule import RevenueSchedule
from recon_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class MatchRecordDTO:
    """One persisted match edge."""

    id: UUID
    match_group_id: UUID
    deposit_line_item_id: UUID
    revenue_schedule_id: UUID
    cardinality_type: CardinalityType
    allocated_usage: Decimal
    allocated_commission: Decimal
    status: MatchStatus
    source: MatchSource
    confidence: Decimal | None
    reasons: tuple[str, ...]
    created_at: datetime | None
    reversed_at: datetime | None


def _record_to_dto(match: DepositLineMatch) -> MatchRecordDTO:
    return MatchRecordDTO(
        id=match.id,
        match_group_id=match.match_group_id,
        deposit_line_item_id=match.deposit_line_item_id,
        revenue_schedule_id=match.revenue_schedule_id,
        cardinality_type=CardinalityType(match.cardinality_type),
        allocated_usage=match.allocated_usage,
        allocated_commission=match.allocated_commission,
        status=MatchStatus(match.status),
        source=MatchSource(match.source),
        confidence=match.confidence,
        reasons=tuple(match.reasons or ()),
        created_at=match.created_at,
        reversed_at=match.reversed_at,
    )


class MatchSelector(BaseSelector):
    """Read-only queries over schedules, lines and match records."""

    def applied_match_counts(self, schedule_ids: list[UUID]) -> dict[UUID, int]:
        """Number of Applied matches per schedule id (missing ids -> 0)."""
        if not schedule_ids:
            return {}
        rows = self.session.execute(
            select(DepositLineMatch.revenue_schedule_id, func.count())
            .where(
                DepositLineMatch.revenue_schedule_id.in_(schedule_ids),
                DepositLineMatch.status == MatchStatus.APPLIED.value,
            )
            .group_by(DepositLineMatch.revenue_schedule_id)
        ).all()
        counts = {sid: 0 for sid in schedule_ids}
        counts.update({sid: n for sid, n in rows})
        return counts

    def eligible_schedules(self, tenant_id: UUID) -> list[ScheduleSnapshot]:
        """Non-deleted, non-Reconciled schedules of a tenant."""
        schedules = self.session.scalars(
            select(RevenueSchedule)
            .where(
                RevenueSchedule.tenant_id == tenant_id,
                RevenueSchedule.deleted_at.is_(None),
                RevenueSchedule.status != ScheduleStatus.RECONCILED.value,
            )
            .order_by(RevenueSchedule.id)
        ).all()
        counts = self.applied_match_counts([s.id for s in schedules])
        return [s.to_snapshot(applied_match_count=counts[s.id]) for s in schedules]

    def schedule_snapshots(self, schedule_ids: list[UUID]) -> dict[UUID, ScheduleSnapshot]:
        schedules = self.session.scalars(
            select(RevenueSchedule).where(RevenueSchedule.id.in_(schedule_ids))
        ).all()
        counts = self.applied_match_counts([s.id for s in schedules])
        return {s.id: s.to_snapshot(applied_match_count=counts[s.id]) for s in schedules}

    def line_snapshots(self, line_ids: list[UUID]) -> dict[UUID, LineSnapshot]:
        lines = self.session.scalars(
            select(DepositLineItem).where(DepositLineItem.id.in_(line_ids))
        ).all()
        return {line.id: line.to_snapshot() for line in lines}

    def lines_for_deposit(self, deposit_id: UUID) -> list[LineSnapshot]:
        lines = self.session.scalars(
            select(DepositLineItem)
            .where(DepositLineItem.deposit_id == deposit_id)
            .order_by(DepositLineItem.line_number, DepositLineItem.id)
        ).all()
        return [line.to_snapshot() for line in lines]

    def active_group_ids_for_line(self, line_id: UUID) -> list[UUID]:
        """Groups with at least one Applied match on the line, oldest first."""
        rows = self.session.execute(
            select(DepositLineMatch.match_group_id, func.min(DepositLineMatch.created_at))
            .where(
                DepositLineMatch.deposit_line_item_id == line_id,
                DepositLineMatch.status == MatchStatus.APPLIED.value,
            )
            .group_by(DepositLineMatch.match_group_id)
            .order_by(func.min(DepositLineMatch.created_at), DepositLineMatch.match_group_id)
        ).all()
        return [group_id for group_id, _ in rows]

    def applied_matches_for_line(self, line_id: UUID) -> list[MatchRecordDTO]:
        matches = self.session.scalars(
            select(DepositLineMatch)
            .where(
                DepositLineMatch.deposit_line_item_id == line_id,
                DepositLineMatch.status == MatchStatus.APPLIED.value,
            )
            .order_by(DepositLineMatch.id)
        ).all()
        return [_record_to_dto(m) for m in matches]
