"""
Deposit finalization and its undo.

Finalizing a deposit locks its matched lines (``reconciled``) so neither
the planner nor the executor will add or reverse matches on them.
Unfinalizing releases the lock.  Both re-derive schedule status and the
deposit aggregates on the way out.

Rows are locked in the same order as the match executor: deposit lines,
then revenue schedules (each by id), then the deposit row, so a finalize
never deadlocks against a concurrent apply or reverse.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from recon_config.schema import MatchingConfig
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.types import DepositStatus, LineStatus, ScheduleStatus
from recon_kernel.exceptions import DepositFinalizationError, DepositNotFoundError
from recon_kernel.logging_config import LogContext, get_logger
from recon_kernel.models.deposit import Deposit, DepositLineItem
from recon_kernel.selectors.match_selector import MatchSelector
from recon_services.bookkeeping import recompute_deposit
from recon_services.match_executor import MatchExecutor

logger = get_logger("services.deposit_lifecycle")

_LOCKABLE = (LineStatus.MATCHED.value, LineStatus.PARTIALLY_MATCHED.value)


@dataclass(frozen=True)
class FinalizeResult:
    deposit_id: UUID
    status: DepositStatus
    locked_line_count: int
    schedule_statuses: dict[UUID, ScheduleStatus]


class DepositLifecycleService:
    """
    Finalize / unfinalize deposits.

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

    def _lock_lines(self, deposit_id: UUID) -> list[DepositLineItem]:
        if self._session.get(Deposit, deposit_id) is None:
            raise DepositNotFoundError(str(deposit_id))
        lines = self._session.scalars(
            select(DepositLineItem)
            .where(DepositLineItem.deposit_id == deposit_id)
            .order_by(DepositLineItem.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).all()
        return list(lines)

    def _lock_deposit(self, deposit_id: UUID) -> Deposit:
        deposit = self._session.scalars(
            select(Deposit)
            .where(Deposit.id == deposit_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one_or_none()
        if deposit is None:
            raise DepositNotFoundError(str(deposit_id))
        return deposit

    def _resync(self, lines: list[DepositLineItem], actor_id: UUID) -> dict[UUID, ScheduleStatus]:
        ids = {
            match.revenue_schedule_id
            for line in lines
            for match in self._selector.applied_matches_for_line(line.id)
        }
        return {
            sid: self._executor.resync_schedule(sid, actor_id=actor_id)
            for sid in sorted(ids, key=str)
        }

    def finalize_deposit(self, deposit_id: UUID, *, actor_id: UUID) -> FinalizeResult:
        """Lock every matched line of a deposit and mark it Completed.

        Raises:
            DepositNotFoundError: Unknown deposit.
            DepositFinalizationError: Already finalized, or some
                non-ignored line is still Unmatched.
        """
        with self._session.begin_nested():
            lines = self._lock_lines(deposit_id)
            open_lines = [line for line in lines if line.status == LineStatus.UNMATCHED.value]
            if open_lines:
                logger.info(
                    "deposit_finalize_blocked",
                    extra={"deposit_id": str(deposit_id), "open_lines": len(open_lines)},
                )
                raise DepositFinalizationError(
                    str(deposit_id),
                    f"{len(open_lines)} line(s) are still unmatched",
                )
            statuses = self._resync(lines, actor_id)
            deposit = self._lock_deposit(deposit_id)
            if deposit.reconciled:
                raise DepositFinalizationError(str(deposit_id), "Deposit is already finalized")

            now = self._clock.now()
            locked = 0
            for line in lines:
                if line.status in _LOCKABLE:
                    line.reconciled = True
                    line.reconciled_at = now
                    line.updated_by_id = actor_id
                    locked += 1

            deposit.reconciled = True
            deposit.reconciled_at = now
            deposit.updated_by_id = actor_id
            recompute_deposit(self._session, deposit)
            self._session.flush()

        with LogContext.bind(deposit_id=str(deposit_id), actor_id=str(actor_id)):
            logger.info(
                "deposit_finalized",
                extra={"locked_line_count": locked, "schedule_count": len(statuses)},
            )
        return FinalizeResult(deposit_id, DepositStatus(deposit.status), locked, statuses)

    def unfinalize_deposit(self, deposit_id: UUID, *, actor_id: UUID) -> FinalizeResult:
        """Release the lock on a finalized deposit's lines."""
        with self._session.begin_nested():
            lines = self._lock_lines(deposit_id)
            statuses = self._resync(lines, actor_id)
            deposit = self._lock_deposit(deposit_id)
            if not deposit.reconciled:
                raise DepositFinalizationError(str(deposit_id), "Deposit is not finalized")

            released = 0
            for line in lines:
                if line.reconciled:
                    line.reconciled = False
                    line.reconciled_at = None
                    line.updated_by_id = actor_id
                    released += 1

            deposit.reconciled = False
            deposit.reconciled_at = None
            deposit.updated_by_id = actor_id
            recompute_deposit(self._session, deposit)
            self._session.flush()

        with LogContext.bind(deposit_id=str(deposit_id), actor_id=str(actor_id)):
            logger.info(
                "deposit_unfinalized",
                extra={"released_line_count": released, "schedule_count": len(statuses)},
            )
        return FinalizeResult(deposit_id, DepositStatus(deposit.status), released, statuses)
