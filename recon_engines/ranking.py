"""
recon_engines.ranking -- Candidate ranker for deposit line -> revenue schedule matches.

Responsibility:
    Given one deposit line and the schedules a tenant could match it to,
    filter the eligible schedules and score each one with a weighted set
    of independent signals.  Returns candidates sorted by confidence with
    a typed, render-ready explanation per signal.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Schedules arrive as
    ScheduleSnapshot values from the selector; the ranker never queries.

Invariants enforced:
    - Determinism: equal confidence sorts by schedule id ascending, so
      repeated runs over the same input return the same order.
    - Confidence lies in [0, 1], rounded to 4 decimal places.
    - Soft-deleted, Reconciled, cross-tenant and identity-incompatible
      schedules never appear as candidates.

Failure modes:
    - None.  A line with no eligible schedule yields an empty list.

Audit relevance:
    Every auto-matched row persists the confidence and the messages of
    the signals that contributed, so reviewers can see why it was chosen.
"""

from __future__ import annotations

import calendar
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import UUID

from recon_config.schema import MatchingConfig
from recon_engines.metrics import MetricsInput, compute_metrics
from recon_engines.tracer import traced_engine
from recon_kernel.domain.dtos import LineSnapshot, ScheduleSnapshot
from recon_kernel.domain.types import ScheduleStatus
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.ranking")

ZERO = Decimal("0")
ONE = Decimal("1")
CONFIDENCE_QUANTUM = Decimal("0.0001")

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


class SignalKind(str, Enum):
    """The independent evidence types a candidate is scored on."""

    USAGE_AMOUNT = "usage_amount"
    COMMISSION_AMOUNT = "commission_amount"
    ACCOUNT = "account"
    VENDOR = "vendor"
    PRODUCT = "product"
    DATE_PROXIMITY = "date_proximity"


@dataclass(frozen=True)
class MatchSignal:
    """One evaluated signal: a graded score in [0, 1] and its explanation."""

    kind: SignalKind
    score: Decimal
    weight: Decimal
    message: str

    @property
    def contributes(self) -> bool:
        return self.score > 0 and self.weight > 0


@dataclass(frozen=True)
class RankedCandidate:
    """A schedule proposed for a line, with confidence and rationale."""

    schedule: ScheduleSnapshot
    confidence: Decimal
    signals: tuple[MatchSignal, ...]

    @property
    def schedule_id(self) -> UUID:
        return self.schedule.schedule_id

    @property
    def reasons(self) -> tuple[str, ...]:
        return tuple(s.message for s in self.signals if s.contributes)


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    lowered = _NON_ALNUM.sub(" ", value.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def name_similarity(a: str | None, b: str | None) -> Decimal:
    """Shared-token ratio of two names: |A & B| / max(|A|, |B|)."""
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return ZERO
    if norm_a == norm_b:
        return ONE
    tokens_a = set(norm_a.split(" "))
    tokens_b = set(norm_b.split(" "))
    shared = len(tokens_a & tokens_b)
    return Decimal(shared) / Decimal(max(len(tokens_a), len(tokens_b)))


def amount_variance(a: Decimal, b: Decimal) -> Decimal:
    """|a - b| / max(|a|, |b|), capped at 1; 1 when either side is zero."""
    if a == 0 or b == 0:
        return ONE
    return min(abs(a - b) / max(abs(a), abs(b)), ONE)


def _month_end(value: date) -> date:
    return value.replace(day=calendar.monthrange(value.year, value.month)[1])


def _ids_compatible(a: UUID | None, b: UUID | None) -> bool:
    return a is None or b is None or a == b


class CandidateRanker:
    """
    Ranks revenue schedules for one deposit line.

    Contract:
        Pure -- all inputs are explicit (config, snapshots, reference date).
    Guarantees:
        - ``rank`` returns at most ``config.candidate_limit`` candidates,
          sorted by (confidence desc, schedule id asc).
        - Every returned candidate passed ``is_eligible``.
    Non-goals:
        - Does not decide whether to apply; the orchestrator compares the
          top confidence with the auto-match threshold.
    """

    def __init__(self, config: MatchingConfig):
        self.config = config

    def is_eligible(
        self,
        line: LineSnapshot,
        schedule: ScheduleSnapshot,
        reference_date: date | None = None,
    ) -> bool:
        if schedule.deleted:
            return False
        if schedule.tenant_id != line.tenant_id:
            return False
        if schedule.status == ScheduleStatus.RECONCILED:
            return False
        if not (
            _ids_compatible(line.account_id, schedule.account_id)
            and _ids_compatible(line.vendor_id, schedule.vendor_id)
            and _ids_compatible(line.distributor_id, schedule.distributor_id)
        ):
            return False
        reference = line.payment_date or reference_date
        if (
            not self.config.include_future_schedules
            and reference is not None
            and schedule.schedule_date is not None
            and schedule.schedule_date > _month_end(reference)
        ):
            return False
        return True

    @traced_engine("ranking", "1.0", fingerprint_fields=("reference_date", "min_confidence"))
    def rank(
        self,
        line: LineSnapshot,
        schedules: Sequence[ScheduleSnapshot],
        reference_date: date | None = None,
        min_confidence: Decimal | None = None,
    ) -> list[RankedCandidate]:
        """
        Score every eligible schedule and return the best candidates.

        Args:
            line: The deposit line to match.
            schedules: Schedules to consider (pre-filtered by tenant).
            reference_date: Deposit period date, used when the line has no
                payment date of its own.
            min_confidence: Drop candidates below this confidence.
        """
        t0 = time.monotonic()
        eligible = [s for s in schedules if self.is_eligible(line, s, reference_date)]

        candidates = []
        for schedule in eligible:
            candidate = self.score(line, schedule, reference_date)
            if candidate.confidence <= 0:
                continue
            if min_confidence is not None and candidate.confidence < min_confidence:
                continue
            candidates.append(candidate)

        candidates.sort(key=lambda c: (-c.confidence, c.schedule_id))
        ranked = candidates[: self.config.candidate_limit]

        logger.debug("candidate_ranking_completed", extra={
            "line_id": str(line.line_id),
            "schedules_considered": len(schedules),
            "schedules_eligible": len(eligible),
            "candidates_returned": len(ranked),
            "top_confidence": str(ranked[0].confidence) if ranked else "0",
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return ranked

    def score(
        self,
        line: LineSnapshot,
        schedule: ScheduleSnapshot,
        reference_date: date | None = None,
    ) -> RankedCandidate:
        """Evaluate every signal for one (line, schedule) pair."""
        weights = self.config.weights
        metrics = compute_metrics(MetricsInput.from_schedule(schedule))

        usage_target = metrics.usage_difference
        if usage_target <= self.config.tolerance:
            usage_target = metrics.expected_usage_net or ZERO
        commission_target = metrics.commission_difference
        if commission_target <= self.config.tolerance:
            commission_target = metrics.expected_commission_net or ZERO

        signals = (
            self._amount_signal(
                SignalKind.USAGE_AMOUNT, "usage", line.usage_remaining,
                usage_target, weights.usage_amount,
            ),
            self._amount_signal(
                SignalKind.COMMISSION_AMOUNT, "commission", line.commission_remaining,
                commission_target, weights.commission_amount,
            ),
            self._account_signal(line, schedule, weights.account),
            self._vendor_signal(line, schedule, weights.vendor),
            self._product_signal(line, schedule, weights.product),
            self._date_signal(line, schedule, reference_date, weights.date_proximity),
        )

        weighted = sum((s.score * s.weight for s in signals), ZERO)
        confidence = (weighted / weights.total).quantize(
            CONFIDENCE_QUANTUM, rounding=ROUND_HALF_UP,
        )
        return RankedCandidate(
            schedule=schedule,
            confidence=min(max(confidence, ZERO), ONE),
            signals=signals,
        )

    def _amount_signal(
        self,
        kind: SignalKind,
        label: str,
        line_amount: Decimal,
        target: Decimal,
        weight: Decimal,
    ) -> MatchSignal:
        tolerance = self.config.amount_match_tolerance
        if line_amount != 0 and abs(line_amount - target) <= tolerance:
            return MatchSignal(kind, ONE, weight, f"{label} matches within ${tolerance}")
        score = ONE - amount_variance(line_amount, target)
        if score <= 0:
            return MatchSignal(kind, ZERO, weight, f"{label} does not match")
        pct = ((ONE - score) * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
        return MatchSignal(kind, score, weight, f"{label} within {pct}% of expected")

    def _account_signal(
        self, line: LineSnapshot, schedule: ScheduleSnapshot, weight: Decimal,
    ) -> MatchSignal:
        kind = SignalKind.ACCOUNT
        if line.account_id is not None and line.account_id == schedule.account_id:
            return MatchSignal(kind, ONE, weight, "account matches")
        similarity = name_similarity(line.account_name, schedule.account_name)
        if similarity == ONE:
            return MatchSignal(kind, ONE, weight, "account name matches")
        if similarity > 0:
            pct = (similarity * 100).quantize(ONE, rounding=ROUND_HALF_UP)
            return MatchSignal(kind, similarity, weight, f"account name {pct}% similar")
        return MatchSignal(kind, ZERO, weight, "account not matched")

    def _vendor_signal(
        self, line: LineSnapshot, schedule: ScheduleSnapshot, weight: Decimal,
    ) -> MatchSignal:
        kind = SignalKind.VENDOR
        vendor = line.vendor_id is not None and line.vendor_id == schedule.vendor_id
        distributor = (
            line.distributor_id is not None
            and line.distributor_id == schedule.distributor_id
        )
        if vendor and distributor:
            return MatchSignal(kind, ONE, weight, "vendor and distributor match")
        if vendor:
            return MatchSignal(kind, ONE, weight, "vendor matches")
        if distributor:
            return MatchSignal(kind, ONE, weight, "distributor matches")
        return MatchSignal(kind, ZERO, weight, "vendor not matched")

    def _product_signal(
        self, line: LineSnapshot, schedule: ScheduleSnapshot, weight: Decimal,
    ) -> MatchSignal:
        kind = SignalKind.PRODUCT
        line_order = normalize_text(line.order_id)
        if line_order and line_order == normalize_text(schedule.order_id):
            return MatchSignal(kind, ONE, weight, f"order id {line.order_id} matches")
        if line.product_id is not None and line.product_id == schedule.product_id:
            return MatchSignal(kind, ONE, weight, "product matches")
        similarity = name_similarity(line.product_name, schedule.product_name)
        if similarity > 0:
            pct = (similarity * 100).quantize(ONE, rounding=ROUND_HALF_UP)
            return MatchSignal(kind, similarity, weight, f"product name {pct}% similar")
        return MatchSignal(kind, ZERO, weight, "product not matched")

    def _date_signal(
        self,
        line: LineSnapshot,
        schedule: ScheduleSnapshot,
        reference_date: date | None,
        weight: Decimal,
    ) -> MatchSignal:
        kind = SignalKind.DATE_PROXIMITY
        reference = line.payment_date or reference_date
        if reference is None or schedule.schedule_date is None:
            return MatchSignal(kind, ZERO, weight, "no date to compare")
        days = abs((schedule.schedule_date - reference).days)
        window = Decimal(self.config.date_window_days)
        score = max(ONE - Decimal(days) / window, ZERO)
        if score <= 0:
            return MatchSignal(kind, ZERO, weight, f"schedule date {days} days from deposit")
        return MatchSignal(
            kind,
            score.quantize(CONFIDENCE_QUANTUM, rounding=ROUND_HALF_UP),
            weight,
            f"schedule date {days} day(s) from deposit period",
        )
