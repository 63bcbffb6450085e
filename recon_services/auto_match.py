"""
AutoMatchOrchestrator -- batch preview and confirm of one-to-one auto matches.

Responsibility:
    ``preview`` ranks candidates for every line of a deposit and sorts each
    line into exactly one bucket.  ``confirm`` applies a (possibly trimmed)
    candidate list one line at a time, isolating failures.  ``run`` does
    both in one call.

Architecture position:
    Services -- reads through MatchSelector, scores with CandidateRanker,
    then goes through validate_selection -> AllocationPlanner ->
    MatchExecutor for every confirmed candidate.

Invariants enforced:
    - ``preview`` is read-only and safe to cancel at any point.
    - Bucket counts always sum to ``processed``.
    - One failed candidate never blocks the rest of the batch; each apply
      is atomic on its own SAVEPOINT.
    - ``confirm`` re-reads and re-checks each candidate, so a schedule
      reconciled by an earlier candidate in the same batch is skipped.

Failure modes:
    - DepositNotFoundError from ``preview`` / ``run``.
    - Per-line ranking errors are recorded in the ERROR bucket and logged.
"""

from __future__ import annotations

import contextvars
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recon_config.schema import MatchingConfig
from recon_engines.allocation import AllocationPlanner, AllocationRequest
from recon_engines.ranking import CandidateRanker
from recon_engines.selection import validate_selection
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.dtos import LineSnapshot, ScheduleSnapshot
from recon_kernel.domain.types import CardinalityType, LineStatus, MatchSource
from recon_kernel.exceptions import DepositNotFoundError, ReconKernelError
from recon_kernel.logging_config import LogContext, get_logger
from recon_kernel.models.deposit import Deposit
from recon_kernel.selectors.match_selector import MatchSelector
from recon_services.match_executor import MatchExecutor

logger = get_logger("services.auto_match")


class AutoMatchBucket(str, Enum):
    """Where a line landed in an auto-match preview."""

    ALREADY_MATCHED = "already_matched"
    CANDIDATE = "candidate"
    BELOW_THRESHOLD = "below_threshold"
    NO_CANDIDATES = "no_candidates"
    IGNORED = "ignored"
    ERROR = "error"


@dataclass(frozen=True)
class AutoMatchCandidate:
    """The top-ranked schedule for a line, at or above the threshold."""

    line_id: UUID
    line_number: int
    account_name: str | None
    usage: Decimal
    commission: Decimal
    schedule_id: UUID
    confidence: Decimal
    reasons: tuple[str, ...]


@dataclass(frozen=True)
class LineEvaluation:
    line_id: UUID
    bucket: AutoMatchBucket
    candidate: AutoMatchCandidate | None = None
    top_confidence: Decimal | None = None
    error: str | None = None


@dataclass(frozen=True)
class AutoMatchPreview:
    deposit_id: UUID
    threshold: Decimal
    evaluations: tuple[LineEvaluation, ...]

    def _count(self, bucket: AutoMatchBucket) -> int:
        return sum(1 for e in self.evaluations if e.bucket == bucket)

    @property
    def processed(self) -> int:
        return len(self.evaluations)

    @property
    def already_matched(self) -> int:
        return self._count(AutoMatchBucket.ALREADY_MATCHED)

    @property
    def below_threshold(self) -> int:
        return self._count(AutoMatchBucket.BELOW_THRESHOLD)

    @property
    def no_candidates(self) -> int:
        return self._count(AutoMatchBucket.NO_CANDIDATES)

    @property
    def ignored(self) -> int:
        return self._count(AutoMatchBucket.IGNORED)

    @property
    def errors(self) -> int:
        return self._count(AutoMatchBucket.ERROR)

    @property
    def auto_match_candidates(self) -> tuple[AutoMatchCandidate, ...]:
        return tuple(e.candidate for e in self.evaluations if e.candidate is not None)

    @property
    def line_buckets(self) -> dict[UUID, AutoMatchBucket]:
        return {e.line_id: e.bucket for e in self.evaluations}

    def summary(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "already_matched": self.already_matched,
            "auto_match_candidates": len(self.auto_match_candidates),
            "below_threshold": self.below_threshold,
            "no_candidates": self.no_candidates,
            "ignored": self.ignored,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class ConfirmFailure:
    line_id: UUID
    schedule_id: UUID
    code: str
    message: str


@dataclass(frozen=True)
class AppliedCandidate:
    line_id: UUID
    schedule_id: UUID
    match_group_id: UUID


@dataclass(frozen=True)
class AutoMatchConfirmResult:
    applied: tuple[AppliedCandidate, ...] = ()
    failures: tuple[ConfirmFailure, ...] = field(default_factory=tuple)

    @property
    def applied_count(self) -> int:
        return len(self.applied)


@dataclass(frozen=True)
class AutoMatchRunResult:
    preview: AutoMatchPreview
    confirm: AutoMatchConfirmResult


class _CandidateRejected(Exception):
    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


class AutoMatchOrchestrator:
    """
    Auto-match over a whole deposit.

    Contract:
        ``preview(deposit_id, threshold)`` -> AutoMatchPreview
        ``confirm(candidates, actor_id)`` -> AutoMatchConfirmResult

    Guarantees:
        - Each line appears in exactly one bucket of a preview.
        - Confirmed matches are OneToOne with source Auto and carry the
          candidate's confidence and reasons.

    Non-goals:
        - Does NOT call session.commit() -- caller controls boundaries.
        - Does NOT order unrelated lines' applies in any particular way
          beyond the order of the candidate list.
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

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def preview(self, deposit_id: UUID, threshold: Decimal | None = None) -> AutoMatchPreview:
        deposit = self._session.get(Deposit, deposit_id)
        if deposit is None:
            raise DepositNotFoundError(str(deposit_id))

        config = self._config.for_tenant(deposit.tenant_id)
        threshold = config.auto_match_threshold if threshold is None else threshold
        ranker = CandidateRanker(config)
        lines = self._selector.lines_for_deposit(deposit_id)
        schedules = self._selector.eligible_schedules(deposit.tenant_id)
        reference_date = deposit.deposit_date

        t0 = time.monotonic()
        with LogContext.bind(deposit_id=str(deposit_id), tenant_id=str(deposit.tenant_id)):
            def evaluate(line: LineSnapshot) -> LineEvaluation:
                return self._evaluate(ranker, line, schedules, reference_date, threshold)

            if config.preview_workers > 1 and len(lines) > 1:
                with ThreadPoolExecutor(max_workers=config.preview_workers) as pool:
                    futures = [
                        pool.submit(contextvars.copy_context().run, evaluate, line)
                        for line in lines
                    ]
                    evaluations = tuple(future.result() for future in futures)
            else:
                evaluations = tuple(evaluate(line) for line in lines)

            result = AutoMatchPreview(deposit_id, threshold, evaluations)
            logger.info(
                "auto_match_preview_completed",
                extra={
                    **result.summary(),
                    "threshold": str(threshold),
                    "schedules_considered": len(schedules),
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
        return result

    def _evaluate(
        self,
        ranker: CandidateRanker,
        line: LineSnapshot,
        schedules: Sequence[ScheduleSnapshot],
        reference_date: date | None,
        threshold: Decimal,
    ) -> LineEvaluation:
        if line.status == LineStatus.IGNORED:
            return LineEvaluation(line.line_id, AutoMatchBucket.IGNORED)
        if line.reconciled or line.status in (
            LineStatus.MATCHED, LineStatus.PARTIALLY_MATCHED,
        ):
            return LineEvaluation(line.line_id, AutoMatchBucket.ALREADY_MATCHED)

        try:
            ranked = ranker.rank(line, schedules, reference_date=reference_date)
        except Exception as exc:
            logger.error(
                "auto_match_line_failed",
                extra={"line_id": str(line.line_id), "error": str(exc)},
                exc_info=True,
            )
            return LineEvaluation(line.line_id, AutoMatchBucket.ERROR, error=str(exc))

        if not ranked:
            return LineEvaluation(line.line_id, AutoMatchBucket.NO_CANDIDATES)
        top = ranked[0]
        if top.confidence < threshold:
            return LineEvaluation(
                line.line_id, AutoMatchBucket.BELOW_THRESHOLD, top_confidence=top.confidence,
            )
        candidate = AutoMatchCandidate(
            line_id=line.line_id,
            line_number=line.line_number,
            account_name=line.account_name,
            usage=line.usage,
            commission=line.commission,
            schedule_id=top.schedule_id,
            confidence=top.confidence,
            reasons=top.reasons,
        )
        return LineEvaluation(
            line.line_id, AutoMatchBucket.CANDIDATE,
            candidate=candidate, top_confidence=top.confidence,
        )

    # ------------------------------------------------------------------
    # Confirm
    # ------------------------------------------------------------------

    def confirm(
        self,
        candidates: Sequence[AutoMatchCandidate],
        *,
        actor_id: UUID,
    ) -> AutoMatchConfirmResult:
        applied: list[AppliedCandidate] = []
        failures: list[ConfirmFailure] = []

        for candidate in candidates:
            try:
                group_id = self._confirm_one(candidate, actor_id)
            except _CandidateRejected as exc:
                failures.append(ConfirmFailure(
                    candidate.line_id, candidate.schedule_id, exc.code, str(exc),
                ))
            except ReconKernelError as exc:
                failures.append(ConfirmFailure(
                    candidate.line_id, candidate.schedule_id, exc.code, str(exc),
                ))
            except SQLAlchemyError as exc:
                logger.error(
                    "auto_match_confirm_db_error",
                    extra={"line_id": str(candidate.line_id), "error": str(exc)},
                    exc_info=True,
                )
                failures.append(ConfirmFailure(
                    candidate.line_id, candidate.schedule_id, "DATABASE_ERROR", str(exc),
                ))
            else:
                applied.append(AppliedCandidate(
                    candidate.line_id, candidate.schedule_id, group_id,
                ))

        for failure in failures:
            logger.warning(
                "auto_match_candidate_failed",
                extra={
                    "line_id": str(failure.line_id),
                    "schedule_id": str(failure.schedule_id),
                    "code": failure.code,
                },
            )
        logger.info(
            "auto_match_confirm_completed",
            extra={
                "requested": len(candidates),
                "applied_count": len(applied),
                "failure_count": len(failures),
            },
        )
        return AutoMatchConfirmResult(applied=tuple(applied), failures=tuple(failures))

    def _confirm_one(self, candidate: AutoMatchCandidate, actor_id: UUID) -> UUID:
        line = self._selector.line_snapshots([candidate.line_id]).get(candidate.line_id)
        if line is None:
            raise _CandidateRejected("LINE_NOT_FOUND", "Deposit line not found")
        schedule = self._selector.schedule_snapshots(
            [candidate.schedule_id],
        ).get(candidate.schedule_id)
        if schedule is None:
            raise _CandidateRejected("SCHEDULE_NOT_FOUND", "Revenue schedule not found")

        if line.status in (LineStatus.MATCHED, LineStatus.PARTIALLY_MATCHED):
            raise _CandidateRejected(
                "LINE_ALREADY_MATCHED", f"Line {line.line_number} is already matched",
            )
        config = self._config.for_tenant(line.tenant_id)
        deposit = self._session.get(Deposit, line.deposit_id)
        reference_date = deposit.deposit_date if deposit is not None else None
        if not CandidateRanker(config).is_eligible(line, schedule, reference_date=reference_date):
            raise _CandidateRejected(
                "CANDIDATE_NO_LONGER_ELIGIBLE",
                "Revenue schedule is no longer eligible for this line",
            )

        check = validate_selection(
            cardinality_type=CardinalityType.ONE_TO_ONE,
            line_ids=[line.line_id],
            schedule_ids=[schedule.schedule_id],
        )
        if not check.compatible:
            raise _CandidateRejected(check.error.code, check.error.message)

        outcome = AllocationPlanner(config).plan(request=AllocationRequest(
            cardinality_type=CardinalityType.ONE_TO_ONE,
            lines=(line,),
            schedules=(schedule,),
        ))
        if not outcome.ok:
            first = outcome.errors[0]
            raise _CandidateRejected(first.code, first.message)

        result = self._executor.apply(
            outcome.plan,
            actor_id=actor_id,
            source=MatchSource.AUTO,
            confidence=candidate.confidence,
            reasons=candidate.reasons,
        )
        return result.match_group_id

    def run(
        self,
        deposit_id: UUID,
        *,
        actor_id: UUID,
        threshold: Decimal | None = None,
    ) -> AutoMatchRunResult:
        """Preview a deposit and immediately confirm every candidate."""
        preview = self.preview(deposit_id, threshold)
        confirm = self.confirm(preview.auto_match_candidates, actor_id=actor_id)
        return AutoMatchRunResult(preview=preview, confirm=confirm)
