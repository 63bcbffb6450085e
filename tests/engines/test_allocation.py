"""
Tests for the allocation planner.

Covers:
- One-to-one full and partial allocation
- One-to-many proportional split, rounding and overpay handling
- Many-to-one summing and overpay handling
- Many-to-many policy error and explicit matrices
- Entity checks and conservation enforcement
- Non-finite and negative caller-supplied amounts
- Property: every accepted plan conserves both axes
"""

from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from recon_config.schema import MatchingConfig
from recon_engines.allocation import (
    Allocation,
    AllocationInput,
    AllocationPlan,
    AllocationPlanner,
    AllocationRequest,
    check_conservation,
    largest_remainder_split,
)
from recon_kernel.domain.dtos import LineSnapshot, ScheduleSnapshot
from recon_kernel.domain.types import CardinalityType, LineStatus
from recon_kernel.exceptions import ConservationViolationError, InvalidAmountError

TENANT = uuid4()
DEPOSIT = uuid4()


def _line(usage="0", commission="0", **kwargs) -> LineSnapshot:
    values = dict(
        line_id=uuid4(),
        deposit_id=DEPOSIT,
        tenant_id=TENANT,
        line_number=1,
        usage=Decimal(usage),
        commission=Decimal(commission),
    )
    values.update(kwargs)
    return LineSnapshot(**values)


def _schedule(usage="0", commission="0", **kwargs) -> ScheduleSnapshot:
    values = dict(
        schedule_id=uuid4(),
        tenant_id=TENANT,
        expected_usage_gross=Decimal(usage),
        expected_commission_gross=Decimal(commission),
    )
    values.update(kwargs)
    return ScheduleSnapshot(**values)


def _plan(cardinality_type, lines, schedules, **kwargs):
    planner = AllocationPlanner(MatchingConfig())
    return planner.plan(request=AllocationRequest(
        cardinality_type=cardinality_type,
        lines=tuple(lines),
        schedules=tuple(schedules),
        **kwargs,
    ))


def _codes(outcome) -> list[str]:
    return [e.code for e in outcome.errors]


class TestLargestRemainderSplit:

    def test_proportional_exact(self):
        a, b = uuid4(), uuid4()

        shares = largest_remainder_split(
            Decimal("90.00"), [(a, Decimal("60")), (b, Decimal("30"))], Decimal("0.01"),
        )

        assert shares == {a: Decimal("60.00"), b: Decimal("30.00")}

    def test_remainder_assigned_not_dropped(self):
        keys = sorted([uuid4(), uuid4(), uuid4()], key=str)

        shares = largest_remainder_split(
            Decimal("100.00"), [(k, Decimal("1")) for k in keys], Decimal("0.01"),
        )

        assert sum(shares.values()) == Decimal("100.00")
        assert shares[keys[0]] == Decimal("33.34")
        assert shares[keys[1]] == shares[keys[2]] == Decimal("33.33")

    def test_zero_weights_split_equally(self):
        a, b = uuid4(), uuid4()

        shares = largest_remainder_split(
            Decimal("10.00"), [(a, Decimal("0")), (b, Decimal("0"))], Decimal("0.01"),
        )

        assert shares[a] + shares[b] == Decimal("10.00")
        assert abs(shares[a] - shares[b]) <= Decimal("0.01")

    def test_sub_quantum_residue_goes_to_largest_weight(self):
        a, b = uuid4(), uuid4()

        shares = largest_remainder_split(
            Decimal("10.005"), [(a, Decimal("1")), (b, Decimal("3"))], Decimal("0.01"),
        )

        assert sum(shares.values()) == Decimal("10.005")
        assert shares[b] == Decimal("7.505")


class TestOneToOne:

    def test_allocates_remaining_amounts(self):
        line = _line("100.00", "10.00")
        schedule = _schedule("100.00", "10.00")

        outcome = _plan(CardinalityType.ONE_TO_ONE, [line], [schedule])

        assert outcome.ok
        assert outcome.plan.allocations == (
            Allocation(line.line_id, schedule.schedule_id, Decimal("100.00"), Decimal("10.00")),
        )

    def test_partially_allocated_line_uses_remainder(self):
        line = _line("100.00", "10.00", usage_allocated=Decimal("40.00"),
                     commission_allocated=Decimal("4.00"),
                     status=LineStatus.PARTIALLY_MATCHED)

        outcome = _plan(CardinalityType.ONE_TO_ONE, [line], [_schedule("100.00")])

        assert outcome.plan.usage_total == Decimal("60.00")
        assert outcome.plan.commission_total == Decimal("6.00")

    def test_partial_amounts(self):
        outcome = _plan(
            CardinalityType.ONE_TO_ONE,
            [_line("100.00", "10.00")],
            [_schedule("100.00", "10.00")],
            usage_amount=Decimal("25.00"),
            commission_amount=Decimal("2.50"),
        )

        assert outcome.ok
        assert outcome.plan.allocated_usage == Decimal("25.00")
        assert outcome.plan.allocated_commission == Decimal("2.50")

    def test_partial_amount_above_line_is_rejected(self):
        outcome = _plan(
            CardinalityType.ONE_TO_ONE,
            [_line("100.00", "10.00")],
            [_schedule("100.00")],
            usage_amount=Decimal("100.01"),
        )

        assert _codes(outcome) == ["LINE_OVER_ALLOCATED"]

    def test_negative_amount_rejected(self):
        outcome = _plan(
            CardinalityType.ONE_TO_ONE,
            [_line("100.00")],
            [_schedule("100.00")],
            usage_amount=Decimal("-1"),
        )

        assert _codes(outcome) == ["INVALID_AMOUNT"]

    def test_one_to_one_may_overpay(self):
        outcome = _plan(CardinalityType.ONE_TO_ONE, [_line("150.00")], [_schedule("100.00")])

        assert outcome.ok

    def test_fully_allocated_line_has_nothing_to_allocate(self):
        line = _line("100.00", usage_allocated=Decimal("100.00"), status=LineStatus.MATCHED)

        outcome = _plan(CardinalityType.ONE_TO_ONE, [line], [_schedule("100.00")])

        assert _codes(outcome) == ["NOTHING_TO_ALLOCATE"]


class TestOneToMany:

    def test_split_proportional_to_outstanding_balance(self):
        line = _line("90.00")
        first = _schedule("60.00")
        second = _schedule("30.00")

        outcome = _plan(CardinalityType.ONE_TO_MANY, [line], [first, second])

        amounts = {a.schedule_id: a.usage for a in outcome.plan.allocations}
        assert amounts == {first.schedule_id: Decimal("60.00"), second.schedule_id: Decimal("30.00")}

    def test_split_uses_balance_not_expected(self):
        line = _line("50.00")
        paid_down = _schedule("100.00", actual_usage=Decimal("75.00"), applied_match_count=1)
        untouched = _schedule("75.00")

        outcome = _plan(CardinalityType.ONE_TO_MANY, [line], [paid_down, untouched])

        amounts = {a.schedule_id: a.usage for a in outcome.plan.allocations}
        assert amounts[paid_down.schedule_id] == Decimal("12.50")
        assert amounts[untouched.schedule_id] == Decimal("37.50")

    def test_excess_refused_without_acceptance(self):
        outcome = _plan(
            CardinalityType.ONE_TO_MANY, [_line("100.00")], [_schedule("60.00"), _schedule("30.00")],
        )

        assert _codes(outcome) == ["OVERPAYMENT_NOT_ACCEPTED"]

    def test_excess_goes_to_largest_balance_when_accepted(self):
        big = _schedule("60.00")
        small = _schedule("30.00")

        outcome = _plan(
            CardinalityType.ONE_TO_MANY, [_line("100.00")], [big, small], accept_overpaid=True,
        )

        amounts = {a.schedule_id: a.usage for a in outcome.plan.allocations}
        assert amounts == {big.schedule_id: Decimal("70.00"), small.schedule_id: Decimal("30.00")}

    def test_partial_amount_not_supported(self):
        outcome = _plan(
            CardinalityType.ONE_TO_MANY,
            [_line("90.00")],
            [_schedule("60.00"), _schedule("30.00")],
            usage_amount=Decimal("10.00"),
        )

        assert _codes(outcome) == ["PARTIAL_AMOUNT_UNSUPPORTED"]


class TestManyToOne:

    def test_sums_lines_onto_schedule(self):
        lines = [_line("40.00", "4.00"), _line("60.00", "6.00")]

        outcome = _plan(CardinalityType.MANY_TO_ONE, lines, [_schedule("100.00", "10.00")])

        assert outcome.ok
        assert outcome.plan.usage_total == Decimal("100.00")
        assert outcome.plan.commission_total == Decimal("10.00")
        assert len(outcome.plan.allocations) == 2

    def test_overpay_refused_without_acceptance(self):
        lines = [_line("60.00"), _line("60.00")]

        outcome = _plan(CardinalityType.MANY_TO_ONE, lines, [_schedule("100.00")])

        assert _codes(outcome) == ["OVERPAYMENT_NOT_ACCEPTED"]
        assert outcome.plan is None

    def test_overpay_allowed_when_accepted(self):
        lines = [_line("60.00"), _line("60.00")]

        outcome = _plan(
            CardinalityType.MANY_TO_ONE, lines, [_schedule("100.00")], accept_overpaid=True,
        )

        assert outcome.plan.allocated_usage == Decimal("120.00")


class TestManyToMany:

    def test_requires_matrix(self):
        outcome = _plan(
            CardinalityType.MANY_TO_MANY,
            [_line("50.00"), _line("50.00")],
            [_schedule("50.00"), _schedule("50.00")],
        )

        assert _codes(outcome) == ["ALLOCATION_POLICY_UNSUPPORTED"]
        assert "matrix" in outcome.errors[0].message

    def test_explicit_matrix(self):
        l1, l2 = _line("50.00"), _line("50.00")
        s1, s2 = _schedule("70.00"), _schedule("30.00")
        matrix = (
            AllocationInput(l1.line_id, s1.schedule_id, usage=Decimal("50.00")),
            AllocationInput(l2.line_id, s1.schedule_id, usage=Decimal("20.00")),
            AllocationInput(l2.line_id, s2.schedule_id, usage=Decimal("30.00")),
        )

        outcome = _plan(CardinalityType.MANY_TO_MANY, [l1, l2], [s1, s2], allocations=matrix)

        assert outcome.ok
        assert outcome.plan.allocated_usage == Decimal("100.00")

    def test_matrix_errors(self):
        l1, l2 = _line("50.00"), _line("50.00")
        s1, s2 = _schedule("70.00"), _schedule("30.00")
        matrix = (
            AllocationInput(l1.line_id, s1.schedule_id, usage=Decimal("10.00")),
            AllocationInput(l1.line_id, s1.schedule_id, usage=Decimal("10.00")),
            AllocationInput(uuid4(), s2.schedule_id, usage=Decimal("1.00")),
        )

        outcome = _plan(CardinalityType.MANY_TO_MANY, [l1, l2], [s1, s2], allocations=matrix)

        assert set(_codes(outcome)) == {
            "DUPLICATE_ALLOCATION",
            "ALLOCATION_OUTSIDE_SELECTION",
        }

    def test_matrix_over_line_amount(self):
        l1, l2 = _line("50.00"), _line("50.00")
        s1, s2 = _schedule("100.00"), _schedule("100.00")
        matrix = (
            AllocationInput(l1.line_id, s1.schedule_id, usage=Decimal("30.00")),
            AllocationInput(l1.line_id, s2.schedule_id, usage=Decimal("30.00")),
            AllocationInput(l2.line_id, s2.schedule_id, usage=Decimal("10.00")),
        )

        outcome = _plan(CardinalityType.MANY_TO_MANY, [l1, l2], [s1, s2], allocations=matrix)

        assert _codes(outcome) == ["LINE_OVER_ALLOCATED"]

    def test_all_zero_matrix(self):
        l1, l2 = _line("50.00"), _line("50.00")
        s1, s2 = _schedule("100.00"), _schedule("100.00")
        matrix = (AllocationInput(l1.line_id, s1.schedule_id),)

        outcome = _plan(CardinalityType.MANY_TO_MANY, [l1, l2], [s1, s2], allocations=matrix)

        assert _codes(outcome) == ["ALLOCATION_ALL_ZERO"]


class TestEntityChecks:

    def test_incompatible_selection_short_circuits(self):
        outcome = _plan(CardinalityType.ONE_TO_ONE, [_line("1"), _line("1")], [_schedule("1")])

        assert _codes(outcome) == ["SELECTION_INCOMPATIBLE"]

    @pytest.mark.parametrize("overrides,code", [
        ({"status": LineStatus.IGNORED}, "LINE_IGNORED"),
        ({"reconciled": True}, "LINE_LOCKED"),
        ({"tenant_id": uuid4()}, "TENANT_MISMATCH"),
        ({"usage": Decimal("-5")}, "NEGATIVE_LINE_NOT_SUPPORTED"),
    ])
    def test_line_problems(self, overrides, code):
        line = replace(_line("10.00"), **overrides)

        outcome = _plan(CardinalityType.ONE_TO_ONE, [line], [_schedule("10.00")])

        assert code in _codes(outcome)

    def test_lines_from_two_deposits(self):
        lines = [_line("10.00"), _line("10.00", deposit_id=uuid4())]

        outcome = _plan(CardinalityType.MANY_TO_ONE, lines, [_schedule("20.00")])

        assert _codes(outcome) == ["DEPOSIT_MISMATCH"]

    def test_deleted_schedule(self):
        outcome = _plan(
            CardinalityType.ONE_TO_ONE, [_line("10.00")], [_schedule("10.00", deleted=True)],
        )

        assert _codes(outcome) == ["SCHEDULE_DELETED"]


class TestInvalidAmounts:

    @pytest.mark.parametrize("value", [
        Decimal("NaN"), Decimal("Infinity"), Decimal("-Infinity"), Decimal("-0.01"),
    ])
    @pytest.mark.parametrize("field", ["usage_amount", "commission_amount"])
    def test_one_to_one_override(self, field, value):
        outcome = _plan(
            CardinalityType.ONE_TO_ONE,
            [_line("100.00", "10.00")],
            [_schedule("100.00", "10.00")],
            **{field: value},
        )

        assert _codes(outcome) == ["INVALID_AMOUNT"]
        assert outcome.errors[0].field == field

    @pytest.mark.parametrize("value", [Decimal("NaN"), Decimal("Infinity"), Decimal("-5.00")])
    @pytest.mark.parametrize("axis", ["usage", "commission"])
    def test_matrix_cell(self, axis, value):
        l1, l2 = _line("50.00", "5.00"), _line("50.00", "5.00")
        s1, s2 = _schedule("70.00"), _schedule("30.00")
        matrix = (
            AllocationInput(l1.line_id, s1.schedule_id, usage=Decimal("50.00")),
            AllocationInput(l2.line_id, s2.schedule_id, **{axis: value}),
        )

        outcome = _plan(CardinalityType.MANY_TO_MANY, [l1, l2], [s1, s2], allocations=matrix)

        assert _codes(outcome) == ["INVALID_AMOUNT"]
        details = outcome.errors[0].details
        assert details["line_id"] == str(l2.line_id)
        assert details["schedule_id"] == str(s2.schedule_id)

    def test_non_finite_line_amount(self):
        line = replace(_line("10.00"), commission=Decimal("NaN"))

        outcome = _plan(CardinalityType.ONE_TO_ONE, [line], [_schedule("10.00")])

        assert _codes(outcome) == ["INVALID_AMOUNT"]

    def test_conservation_rejects_non_finite_allocation(self, captured_logs):
        plan = AllocationPlan(
            cardinality_type=CardinalityType.ONE_TO_ONE,
            tenant_id=TENANT,
            deposit_id=DEPOSIT,
            line_ids=(uuid4(),),
            schedule_ids=(uuid4(),),
            allocations=(Allocation(uuid4(), uuid4(), Decimal("NaN"), Decimal("0")),),
            usage_total=Decimal("100.00"),
            commission_total=Decimal("0"),
        )

        with pytest.raises(InvalidAmountError) as exc_info:
            check_conservation(plan, Decimal("0.005"))

        assert exc_info.value.code == "INVALID_AMOUNT"
        assert any(r["message"] == "allocation_amount_not_finite" for r in captured_logs())


class TestConservation:

    def _bad_plan(self) -> AllocationPlan:
        return AllocationPlan(
            cardinality_type=CardinalityType.ONE_TO_ONE,
            tenant_id=TENANT,
            deposit_id=DEPOSIT,
            line_ids=(uuid4(),),
            schedule_ids=(uuid4(),),
            allocations=(Allocation(uuid4(), uuid4(), Decimal("99.00"), Decimal("10.00")),),
            usage_total=Decimal("100.00"),
            commission_total=Decimal("10.00"),
        )

    def test_violation_raises(self):
        with pytest.raises(ConservationViolationError) as exc_info:
            check_conservation(self._bad_plan(), Decimal("0.005"))

        assert exc_info.value.axis == "usage"
        assert exc_info.value.code == "CONSERVATION_VIOLATION"

    def test_violation_logged_with_plan(self, captured_logs):
        with pytest.raises(ConservationViolationError):
            check_conservation(self._bad_plan(), Decimal("0.005"))

        record = next(r for r in captured_logs() if r["message"] == "conservation_violation")
        assert record["level"] == "ERROR"
        assert record["plan"]["usage_total"] == "100.00"


amounts = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("100000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)


class TestConservationProperty:

    @settings(max_examples=200, deadline=None)
    @given(
        usage=amounts,
        commission=amounts,
        balances=st.lists(st.tuples(amounts, amounts), min_size=2, max_size=5),
    )
    def test_one_to_many_conserves(self, usage, commission, balances):
        assume(usage > 0 or commission > 0)
        line = _line(str(usage), str(commission))
        schedules = [_schedule(str(u), str(c)) for u, c in balances]

        outcome = _plan(CardinalityType.ONE_TO_MANY, [line], schedules, accept_overpaid=True)

        assert outcome.ok
        assert outcome.plan.allocated_usage == usage
        assert outcome.plan.allocated_commission == commission
        assert all(a.usage >= 0 and a.commission >= 0 for a in outcome.plan.allocations)

    @settings(max_examples=200, deadline=None)
    @given(
        usage=amounts,
        commission=amounts,
        balances=st.lists(st.tuples(amounts, amounts), min_size=2, max_size=5),
    )
    def test_one_to_many_never_overpays_unless_accepted(self, usage, commission, balances):
        line = _line(str(usage), str(commission))
        schedules = [_schedule(str(u), str(c)) for u, c in balances]

        outcome = _plan(CardinalityType.ONE_TO_MANY, [line], schedules)

        if outcome.ok:
            by_id = {s.schedule_id: s for s in schedules}
            for allocation in outcome.plan.allocations:
                schedule = by_id[allocation.schedule_id]
                assert allocation.usage <= schedule.expected_usage_gross
                assert allocation.commission <= schedule.expected_commission_gross

    @settings(max_examples=200, deadline=None)
    @given(lines=st.lists(st.tuples(amounts, amounts), min_size=2, max_size=5))
    def test_many_to_one_conserves(self, lines):
        snapshots = [_line(str(u), str(c)) for u, c in lines]
        assume(any(s.usage > 0 or s.commission > 0 for s in snapshots))

        outcome = _plan(
            CardinalityType.MANY_TO_ONE, snapshots, [_schedule("1.00")], accept_overpaid=True,
        )

        assert outcome.ok
        assert outcome.plan.allocated_usage == sum(u for u, _ in lines)
        assert outcome.plan.allocated_commission == sum(c for _, c in lines)
