"""
recon_engines.allocation -- Allocation planner for match selections.

Responsibility:
    Turn a selection (deposit lines, revenue schedules, cardinality type)
    into per-(line, schedule) usage/commission amounts that conserve the
    money being allocated.  User-correctable problems come back as
    ValidationErrors inside an AllocationOutcome; only a broken
    conservation invariant raises.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Consumes snapshots;
    the match executor re-checks the plan against locked rows.

Invariants enforced:
    - Conservation: per axis, sum(allocations) == amount being allocated
      (within tolerance).  Checked before any plan is returned.
    - Rounding remainders are assigned deterministically (largest
      remainder, ties by larger outstanding balance then schedule id),
      never dropped.
    - A schedule never receives more than its outstanding balance in a
      OneToMany split unless the caller accepted an Overpaid outcome.
    - ManyToMany is never split automatically; it requires an explicit
      allocation matrix.

Failure modes:
    - InvalidAmountError if a plan carries a non-finite amount.
    - ConservationViolationError if a computed plan does not conserve
      totals.  Logged at ERROR with the full plan before raising.

Audit relevance:
    The plan is exactly what the executor persists as match rows, so the
    amounts a reviewer previews are the amounts that get applied.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from uuid import UUID

from recon_config.schema import MatchingConfig
from recon_engines.metrics import outstanding_balances
from recon_engines.selection import validate_selection
from recon_engines.tracer import traced_engine
from recon_kernel.domain.dtos import LineSnapshot, ScheduleSnapshot, ValidationError
from recon_kernel.domain.types import CardinalityType, LineStatus
from recon_kernel.exceptions import ConservationViolationError, InvalidAmountError
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")

ZERO = Decimal("0")


@dataclass(frozen=True)
class AllocationInput:
    """One caller-supplied cell of an explicit allocation matrix."""

    line_id: UUID
    schedule_id: UUID
    usage: Decimal = ZERO
    commission: Decimal = ZERO


@dataclass(frozen=True)
class Allocation:
    """Money assigned from one line to one schedule."""

    line_id: UUID
    schedule_id: UUID
    usage: Decimal
    commission: Decimal


@dataclass(frozen=True)
class AllocationRequest:
    """
    Everything the planner needs for one selection.

    ``usage_amount`` / ``commission_amount`` request a partial OneToOne
    allocation.  ``allocations`` is an explicit matrix, accepted for any
    cardinality and required for ManyToMany.
    """

    cardinality_type: CardinalityType
    lines: tuple[LineSnapshot, ...]
    schedules: tuple[ScheduleSnapshot, ...]
    usage_amount: Decimal | None = None
    commission_amount: Decimal | None = None
    allocations: tuple[AllocationInput, ...] | None = None
    accept_overpaid: bool = False


@dataclass(frozen=True)
class AllocationPlan:
    """A conserved allocation, ready for the match executor."""

    cardinality_type: CardinalityType
    tenant_id: UUID
    deposit_id: UUID
    line_ids: tuple[UUID, ...]
    schedule_ids: tuple[UUID, ...]
    allocations: tuple[Allocation, ...]
    usage_total: Decimal
    commission_total: Decimal
    accept_overpaid: bool = False

    @property
    def allocated_usage(self) -> Decimal:
        return sum((a.usage for a in self.allocations), ZERO)

    @property
    def allocated_commission(self) -> Decimal:
        return sum((a.commission for a in self.allocations), ZERO)

    def to_log_context(self) -> dict:
        return {
            "cardinality_type": self.cardinality_type.value,
            "deposit_id": str(self.deposit_id),
            "line_ids": [str(i) for i in self.line_ids],
            "schedule_ids": [str(i) for i in self.schedule_ids],
            "usage_total": str(self.usage_total),
            "commission_total": str(self.commission_total),
            "allocations": [
                {
                    "line_id": str(a.line_id),
                    "schedule_id": str(a.schedule_id),
                    "usage": str(a.usage),
                    "commission": str(a.commission),
                }
                for a in self.allocations
            ],
        }


@dataclass(frozen=True)
class AllocationOutcome:
    """Either a plan or the validation errors that prevented one."""

    plan: AllocationPlan | None
    errors: tuple[ValidationError, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.plan is not None and not self.errors

    @classmethod
    def success(cls, plan: AllocationPlan) -> AllocationOutcome:
        return cls(plan=plan, errors=())

    @classmethod
    def failure(cls, *errors: ValidationError) -> AllocationOutcome:
        return cls(plan=None, errors=tuple(errors))


def largest_remainder_split(
    total: Decimal,
    weights: Sequence[tuple[UUID, Decimal]],
    quantum: Decimal,
) -> dict[UUID, Decimal]:
    """
    Split ``total`` in proportion to ``weights`` at ``quantum`` granularity.

    Each share is floored to the quantum; the leftover quanta go to the
    largest fractional remainders (ties: larger weight, then lower id).
    Any sub-quantum residue goes to the largest weight.  Zero total
    weight splits equally.  The shares always sum to ``total`` exactly.
    """
    if not weights:
        return {}
    keys = [k for k, _ in weights]
    values = [max(w, ZERO) for _, w in weights]
    weight_total = sum(values, ZERO)
    if weight_total == 0:
        values = [Decimal("1")] * len(values)
        weight_total = Decimal(len(values))

    units_total = (total / quantum).to_integral_value(rounding=ROUND_DOWN)
    raw = [units_total * v / weight_total for v in values]
    floors = [r.to_integral_value(rounding=ROUND_DOWN) for r in raw]
    leftover = int(units_total - sum(floors, ZERO))

    order = sorted(
        range(len(keys)),
        key=lambda i: (-(raw[i] - floors[i]), -values[i], keys[i]),
    )
    for i in order[:leftover]:
        floors[i] += 1

    shares = {k: f * quantum for k, f in zip(keys, floors)}
    residue = total - sum(shares.values(), ZERO)
    if residue:
        target = min(range(len(keys)), key=lambda i: (-values[i], keys[i]))
        shares[keys[target]] += residue
    return shares


def _error(code: str, message: str, field: str | None = None, **details) -> ValidationError:
    return ValidationError(code=code, message=message, field=field, details=details or None)


class AllocationPlanner:
    """
    Builds allocation plans for every cardinality type.

    Contract:
        Pure; never touches a session.  ``plan`` returns an
        AllocationOutcome, never raises for user-correctable input.
    Guarantees:
        - A returned plan conserves usage and commission totals.
        - Allocation amounts are non-negative.
    Non-goals:
        - Does not lock or re-read rows; the executor re-validates the
          plan against the database inside its transaction.
    """

    def __init__(self, config: MatchingConfig):
        self.config = config

    @traced_engine("allocation", "1.0", fingerprint_fields=("request",))
    def plan(self, *, request: AllocationRequest) -> AllocationOutcome:
        check = validate_selection(
            cardinality_type=request.cardinality_type,
            line_ids=[line.line_id for line in request.lines],
            schedule_ids=[s.schedule_id for s in request.schedules],
        )
        if not check.compatible:
            return AllocationOutcome.failure(check.error)

        errors = self._check_entities(request) or self._check_amounts(request)
        if errors:
            return AllocationOutcome.failure(*errors)

        if request.allocations is not None:
            return self._from_matrix(request)

        if request.cardinality_type != CardinalityType.ONE_TO_ONE and (
            request.usage_amount is not None or request.commission_amount is not None
        ):
            return AllocationOutcome.failure(_error(
                "PARTIAL_AMOUNT_UNSUPPORTED",
                "Partial amounts are only supported for one-to-one matches; "
                "supply an allocation matrix instead",
            ))

        if request.cardinality_type == CardinalityType.ONE_TO_ONE:
            return self._one_to_one(request)
        if request.cardinality_type == CardinalityType.ONE_TO_MANY:
            return self._one_to_many(request)
        if request.cardinality_type == CardinalityType.MANY_TO_ONE:
            return self._many_to_one(request)
        return AllocationOutcome.failure(_error(
            "ALLOCATION_POLICY_UNSUPPORTED",
            "Many-to-many matches require an explicit allocation matrix; "
            "specify how much of each line goes to each schedule",
            cardinality_type=request.cardinality_type.value,
        ))

    # ------------------------------------------------------------------
    # Entity checks
    # ------------------------------------------------------------------

    def _check_entities(self, request: AllocationRequest) -> list[ValidationError]:
        errors: list[ValidationError] = []
        tenants = {line.tenant_id for line in request.lines} | {
            s.tenant_id for s in request.schedules
        }
        if len(tenants) > 1:
            errors.append(_error("TENANT_MISMATCH", "Selection spans more than one tenant"))
        if len({line.deposit_id for line in request.lines}) > 1:
            errors.append(_error(
                "DEPOSIT_MISMATCH", "All selected lines must belong to the same deposit",
            ))
        for line in request.lines:
            if not (line.usage.is_finite() and line.commission.is_finite()):
                errors.append(_error(
                    "INVALID_AMOUNT", f"Line {line.line_number} has a non-finite amount",
                    line_id=str(line.line_id),
                ))
                continue
            if line.status == LineStatus.IGNORED:
                errors.append(_error(
                    "LINE_IGNORED", f"Line {line.line_number} is ignored",
                    line_id=str(line.line_id),
                ))
            if line.reconciled:
                errors.append(_error(
                    "LINE_LOCKED", f"Line {line.line_number} is locked by a finalized deposit",
                    line_id=str(line.line_id),
                ))
            if line.usage < 0 or line.commission < 0:
                errors.append(_error(
                    "NEGATIVE_LINE_NOT_SUPPORTED",
                    f"Line {line.line_number} has a negative amount",
                    line_id=str(line.line_id),
                ))
        for schedule in request.schedules:
            if schedule.deleted:
                errors.append(_error(
                    "SCHEDULE_DELETED", "Revenue schedule has been deleted",
                    schedule_id=str(schedule.schedule_id),
                ))
        return errors

    def _check_amounts(self, request: AllocationRequest) -> list[ValidationError]:
        """Caller-supplied amounts must be finite and non-negative."""
        supplied: list[tuple[str, Decimal, dict]] = [
            (name, value, {})
            for name, value in (
                ("usage_amount", request.usage_amount),
                ("commission_amount", request.commission_amount),
            )
            if value is not None
        ]
        for cell in request.allocations or ():
            ids = {"line_id": str(cell.line_id), "schedule_id": str(cell.schedule_id)}
            supplied.append(("usage", cell.usage, ids))
            supplied.append(("commission", cell.commission, ids))

        errors = []
        for name, value, ids in supplied:
            if not value.is_finite() or value < 0:
                errors.append(_error(
                    "INVALID_AMOUNT",
                    f"{name} must be a finite, non-negative amount (got {value})",
                    field=name, **ids,
                ))
        return errors

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    @staticmethod
    def _remaining(line: LineSnapshot) -> tuple[Decimal, Decimal]:
        return max(line.usage_remaining, ZERO), max(line.commission_remaining, ZERO)

    def _one_to_one(self, request: AllocationRequest) -> AllocationOutcome:
        line = request.lines[0]
        schedule = request.schedules[0]
        tolerance = self.config.tolerance
        remaining_usage, remaining_commission = self._remaining(line)

        usage = remaining_usage if request.usage_amount is None else request.usage_amount
        commission = (
            remaining_commission
            if request.commission_amount is None
            else request.commission_amount
        )
        errors = []
        if usage > remaining_usage + tolerance:
            errors.append(_error(
                "LINE_OVER_ALLOCATED",
                f"Usage {usage} exceeds the line's unallocated {remaining_usage}",
                line_id=str(line.line_id), axis="usage",
            ))
        if commission > remaining_commission + tolerance:
            errors.append(_error(
                "LINE_OVER_ALLOCATED",
                f"Commission {commission} exceeds the line's unallocated "
                f"{remaining_commission}",
                line_id=str(line.line_id), axis="commission",
            ))
        if errors:
            return AllocationOutcome.failure(*errors)

        allocation = Allocation(line.line_id, schedule.schedule_id, usage, commission)
        return self._finish(request, [allocation], usage, commission)

    def _one_to_many(self, request: AllocationRequest) -> AllocationOutcome:
        line = request.lines[0]
        quantum = self.config.money_quantum
        usage_total, commission_total = self._remaining(line)

        balances = {s.schedule_id: outstanding_balances(s) for s in request.schedules}
        usage_shares = self._split_axis(
            usage_total,
            {sid: b[0] for sid, b in balances.items()},
            quantum,
            request.accept_overpaid,
        )
        commission_shares = self._split_axis(
            commission_total,
            {sid: b[1] for sid, b in balances.items()},
            quantum,
            request.accept_overpaid,
        )
        errors = []
        for axis, shares, total in (
            ("usage", usage_shares, usage_total),
            ("commission", commission_shares, commission_total),
        ):
            if shares is None:
                errors.append(_error(
                    "OVERPAYMENT_NOT_ACCEPTED",
                    f"Line {axis} {total} exceeds the schedules' outstanding balance; "
                    "accept an Overpaid outcome to allocate the excess",
                    axis=axis,
                ))
        if errors:
            return AllocationOutcome.failure(*errors)

        allocations = [
            Allocation(line.line_id, s.schedule_id, usage_shares[s.schedule_id],
                       commission_shares[s.schedule_id])
            for s in request.schedules
        ]
        return self._finish(request, allocations, usage_total, commission_total)

    def _split_axis(
        self,
        total: Decimal,
        balances: dict[UUID, Decimal],
        quantum: Decimal,
        accept_overpaid: bool,
    ) -> dict[UUID, Decimal] | None:
        """Proportional split clamped to balances; None if overpay is refused."""
        if total == 0:
            return {sid: ZERO for sid in balances}
        outstanding = {
            sid: max(b, ZERO).quantize(quantum, rounding=ROUND_DOWN)
            for sid, b in balances.items()
        }
        capacity = sum(outstanding.values(), ZERO)
        ordered = sorted(outstanding.items(), key=lambda kv: (-kv[1], kv[0]))

        if total <= capacity + self.config.tolerance:
            return largest_remainder_split(total, ordered, quantum)
        if not accept_overpaid:
            return None
        if capacity == 0:
            return largest_remainder_split(total, ordered, quantum)
        shares = dict(outstanding)
        shares[ordered[0][0]] += total - capacity
        return shares

    def _many_to_one(self, request: AllocationRequest) -> AllocationOutcome:
        schedule = request.schedules[0]
        allocations = []
        for line in request.lines:
            usage, commission = self._remaining(line)
            allocations.append(Allocation(line.line_id, schedule.schedule_id, usage, commission))
        usage_total = sum((a.usage for a in allocations), ZERO)
        commission_total = sum((a.commission for a in allocations), ZERO)

        if not request.accept_overpaid:
            errors = self._overpay_errors(request.schedules, allocations)
            if errors:
                return AllocationOutcome.failure(*errors)
        return self._finish(request, allocations, usage_total, commission_total)

    def _from_matrix(self, request: AllocationRequest) -> AllocationOutcome:
        tolerance = self.config.tolerance
        lines = {line.line_id: line for line in request.lines}
        schedule_ids = {s.schedule_id for s in request.schedules}
        matrix = request.allocations or ()
        errors: list[ValidationError] = []

        seen: set[tuple[UUID, UUID]] = set()
        for cell in matrix:
            pair = (cell.line_id, cell.schedule_id)
            if cell.line_id not in lines or cell.schedule_id not in schedule_ids:
                errors.append(_error(
                    "ALLOCATION_OUTSIDE_SELECTION",
                    "Allocation references a line or schedule outside the selection",
                    line_id=str(cell.line_id), schedule_id=str(cell.schedule_id),
                ))
            elif pair in seen:
                errors.append(_error(
                    "DUPLICATE_ALLOCATION", "Line/schedule pair allocated twice",
                    line_id=str(cell.line_id), schedule_id=str(cell.schedule_id),
                ))
            seen.add(pair)
        if all(c.usage == 0 and c.commission == 0 for c in matrix):
            errors.append(_error("ALLOCATION_ALL_ZERO", "Every allocation amount is zero"))
        if errors:
            return AllocationOutcome.failure(*errors)

        per_line: dict[UUID, list[Decimal]] = defaultdict(lambda: [ZERO, ZERO])
        for cell in matrix:
            per_line[cell.line_id][0] += cell.usage
            per_line[cell.line_id][1] += cell.commission
        for line_id, (usage, commission) in per_line.items():
            remaining_usage, remaining_commission = self._remaining(lines[line_id])
            for axis, amount, remaining in (
                ("usage", usage, remaining_usage),
                ("commission", commission, remaining_commission),
            ):
                if amount > remaining + tolerance:
                    errors.append(_error(
                        "LINE_OVER_ALLOCATED",
                        f"Line {lines[line_id].line_number} {axis} allocation {amount} "
                        f"exceeds its unallocated {remaining}",
                        line_id=str(line_id), axis=axis,
                    ))

        allocations = [
            Allocation(c.line_id, c.schedule_id, c.usage, c.commission) for c in matrix
        ]
        if not request.accept_overpaid and request.cardinality_type != CardinalityType.ONE_TO_ONE:
            errors.extend(self._overpay_errors(request.schedules, allocations))
        if errors:
            return AllocationOutcome.failure(*errors)

        usage_total = sum((c.usage for c in matrix), ZERO)
        commission_total = sum((c.commission for c in matrix), ZERO)
        return self._finish(request, allocations, usage_total, commission_total)

    def _overpay_errors(
        self,
        schedules: Sequence[ScheduleSnapshot],
        allocations: Sequence[Allocation],
    ) -> list[ValidationError]:
        tolerance = self.config.tolerance
        errors = []
        for schedule in schedules:
            usage_balance, commission_balance = outstanding_balances(schedule)
            usage = sum((a.usage for a in allocations if a.schedule_id == schedule.schedule_id), ZERO)
            commission = sum(
                (a.commission for a in allocations if a.schedule_id == schedule.schedule_id), ZERO,
            )
            for axis, balance, amount in (
                ("usage", usage_balance, usage),
                ("commission", commission_balance, commission),
            ):
                if balance - amount < -tolerance:
                    errors.append(_error(
                        "OVERPAYMENT_NOT_ACCEPTED",
                        f"Allocating {amount} {axis} would overpay the schedule by "
                        f"{amount - balance}; accept an Overpaid outcome to proceed",
                        schedule_id=str(schedule.schedule_id), axis=axis,
                    ))
        return errors

    # ------------------------------------------------------------------
    # Conservation
    # ------------------------------------------------------------------

    def _finish(
        self,
        request: AllocationRequest,
        allocations: list[Allocation],
        usage_total: Decimal,
        commission_total: Decimal,
    ) -> AllocationOutcome:
        kept = [a for a in allocations if a.usage != 0 or a.commission != 0]
        if not kept:
            return AllocationOutcome.failure(_error(
                "NOTHING_TO_ALLOCATE",
                "The selected lines have no unallocated usage or commission",
            ))
        plan = AllocationPlan(
            cardinality_type=request.cardinality_type,
            tenant_id=request.lines[0].tenant_id,
            deposit_id=request.lines[0].deposit_id,
            line_ids=tuple(line.line_id for line in request.lines),
            schedule_ids=tuple(s.schedule_id for s in request.schedules),
            allocations=tuple(kept),
            usage_total=usage_total,
            commission_total=commission_total,
            accept_overpaid=request.accept_overpaid,
        )
        check_conservation(plan, self.config.tolerance)
        return AllocationOutcome.success(plan)


def check_conservation(plan: AllocationPlan, tolerance: Decimal) -> None:
    """
    Raise ConservationViolationError unless the plan conserves both axes.

    Also rejects negative allocation amounts, which would let one pair
    silently offset another.

    Raises:
        InvalidAmountError: A total or allocation amount is not finite.
        ConservationViolationError: Totals are not conserved.
    """
    for name, value in (("usage_total", plan.usage_total),
                        ("commission_total", plan.commission_total)):
        if not value.is_finite():
            raise InvalidAmountError(name, value)
    for allocation in plan.allocations:
        for name, value in (("usage", allocation.usage), ("commission", allocation.commission)):
            if not value.is_finite():
                logger.error(
                    "allocation_amount_not_finite",
                    extra={"field": name, "value": str(value), "plan": plan.to_log_context()},
                )
                raise InvalidAmountError(name, value)
    for allocation in plan.allocations:
        if allocation.usage < 0 or allocation.commission < 0:
            _violation(plan, "sign", ZERO, min(allocation.usage, allocation.commission), tolerance)
    for axis, expected, actual in (
        ("usage", plan.usage_total, plan.allocated_usage),
        ("commission", plan.commission_total, plan.allocated_commission),
    ):
        if abs(expected - actual) > tolerance:
            _violation(plan, axis, expected, actual, tolerance)


def _violation(
    plan: AllocationPlan,
    axis: str,
    expected: Decimal,
    actual: Decimal,
    tolerance: Decimal,
) -> None:
    logger.error(
        "conservation_violation",
        extra={"axis": axis, "expected": str(expected), "actual": str(actual),
               "plan": plan.to_log_context()},
    )
    raise ConservationViolationError(
        axis=axis, expected=expected, actual=actual, tolerance=tolerance,
    )
