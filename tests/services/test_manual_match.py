"""
Tests for ManualMatchService.

Covers:
- Selection check and candidate suggestions
- Read-only preview with before/after figures and warnings
- Preview issues for missing or foreign rows and planner errors
- Apply only when the preview is clean; undo by group and by line
- Non-finite amounts reported as issues
- Flex decisions on previewed and applied schedules
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from recon_engines.allocation import AllocationInput
from recon_kernel.domain.types import (
    CardinalityType,
    FlexAction,
    IssueLevel,
    LineStatus,
    ScheduleStatus,
)
from recon_kernel.exceptions import DepositLineNotFoundError
from recon_kernel.models import DepositLineMatch
from recon_services.manual_match import ManualMatchService


@pytest.fixture
def service(session, config, clock):
    return ManualMatchService(session, config, clock)


class TestCheckSelection:

    def test_reports_detected_type(self, service):
        check = service.check_selection(CardinalityType.ONE_TO_ONE, [uuid4()], [uuid4(), uuid4()])

        assert not check.compatible
        assert check.detected_type == CardinalityType.ONE_TO_MANY


class TestSuggestCandidates:

    def test_ranks_eligible_schedules(self, service, make_deposit, make_line, make_schedule):
        account = uuid4()
        line = make_line(
            make_deposit(), "100.00", "10.00", account_id=account, product_name="Fiber 100",
        )
        good = make_schedule("100.00", "10.00", account_id=account, product_name="Fiber 100")
        make_schedule("100.00", "10.00", account_id=uuid4())

        candidates = service.suggest_candidates(line.id)

        assert [c.schedule_id for c in candidates] == [good.id]
        assert candidates[0].confidence >= Decimal("0.75")

    def test_unknown_line(self, service):
        with pytest.raises(DepositLineNotFoundError):
            service.suggest_candidates(uuid4())


class TestPreview:

    def test_one_to_many_preview(self, session, service, make_deposit, make_line, make_schedule):
        deposit = make_deposit()
        line = make_line(deposit, "90.00")
        first = make_schedule("60.00")
        second = make_schedule("30.00")

        preview = service.preview_match_group(
            deposit.id, [line.id], [first.id, second.id], CardinalityType.ONE_TO_MANY,
        )

        assert preview.can_apply
        assert preview.issues == ()
        (summary,) = preview.lines
        assert summary.usage_allocated_before == Decimal("0")
        assert summary.usage_allocated_after == Decimal("90.00")
        assert summary.usage_remaining_after == Decimal("0")
        by_id = {s.schedule_id: s for s in preview.schedules}
        assert by_id[first.id].usage_balance_before == Decimal("60.00")
        assert by_id[first.id].usage_balance_after == Decimal("0")
        assert by_id[first.id].status_before == ScheduleStatus.UNRECONCILED
        assert by_id[first.id].status_after == ScheduleStatus.RECONCILED
        assert session.scalars(select(DepositLineMatch)).all() == []
        assert first.actual_usage == Decimal("0")

    def test_underpaid_warning(self, service, make_deposit, make_line, make_schedule):
        deposit = make_deposit()
        line = make_line(deposit, "100.00")
        schedule = make_schedule("150.00")

        preview = service.preview_match_group(
            deposit.id, [line.id], [schedule.id], CardinalityType.ONE_TO_ONE,
        )

        assert preview.can_apply
        assert [w.code for w in preview.warnings] == ["schedule_underpaid"]
        assert preview.warnings[0].schedule_id == schedule.id

    def test_overpay_requires_acceptance(self, service, make_deposit, make_line, make_schedule):
        deposit = make_deposit()
        lines = [make_line(deposit, "60.00"), make_line(deposit, "60.00")]
        schedule = make_schedule("100.00")
        line_ids = [line.id for line in lines]

        refused = service.preview_match_group(
            deposit.id, line_ids, [schedule.id], CardinalityType.MANY_TO_ONE,
        )
        accepted = service.preview_match_group(
            deposit.id, line_ids, [schedule.id], CardinalityType.MANY_TO_ONE,
            accept_overpaid=True,
        )

        assert not refused.can_apply
        assert refused.errors[0].code == "OVERPAYMENT_NOT_ACCEPTED"
        assert refused.errors[0].schedule_id == schedule.id
        assert accepted.can_apply
        assert [w.code for w in accepted.warnings] == ["schedule_overpaid"]
        assert accepted.schedules[0].flex.action == FlexAction.PROMPT
        assert accepted.schedules[0].flex.usage_overage == Decimal("20.00")

    def test_missing_and_foreign_rows(self, service, make_deposit, make_line):
        deposit = make_deposit()
        foreign = make_line(make_deposit(), "10.00")
        missing_line = uuid4()
        missing_schedule = uuid4()

        preview = service.preview_match_group(
            deposit.id, [foreign.id, missing_line], [missing_schedule],
            CardinalityType.MANY_TO_ONE,
        )

        assert not preview.can_apply
        assert {(i.code, i.line_id, i.schedule_id) for i in preview.errors} == {
            ("LINE_NOT_IN_DEPOSIT", foreign.id, None),
            ("LINE_NOT_FOUND", missing_line, None),
            ("SCHEDULE_NOT_FOUND", None, missing_schedule),
        }
        assert all(i.level == IssueLevel.ERROR for i in preview.issues)

    def test_unknown_deposit(self, service):
        preview = service.preview_match_group(uuid4(), [], [], CardinalityType.ONE_TO_ONE)

        assert [i.code for i in preview.errors] == ["DEPOSIT_NOT_FOUND"]

    def test_empty_selection(self, service, make_deposit):
        preview = service.preview_match_group(
            make_deposit().id, [], [], CardinalityType.ONE_TO_ONE,
        )

        assert [i.code for i in preview.errors] == ["SELECTION_INCOMPATIBLE"]

    def test_many_to_many_needs_matrix(self, service, make_deposit, make_line, make_schedule):
        deposit = make_deposit()
        lines = [make_line(deposit, "50.00"), make_line(deposit, "50.00")]
        schedules = [make_schedule("50.00"), make_schedule("50.00")]

        preview = service.preview_match_group(
            deposit.id, [line.id for line in lines], [s.id for s in schedules],
            CardinalityType.MANY_TO_MANY,
        )

        assert [i.code for i in preview.errors] == ["ALLOCATION_POLICY_UNSUPPORTED"]


    @pytest.mark.parametrize("amount", [Decimal("NaN"), Decimal("Infinity"), Decimal("-1.00")])
    def test_invalid_amount_is_an_issue(
        self, service, make_deposit, make_line, make_schedule, amount,
    ):
        deposit = make_deposit()
        line = make_line(deposit, "100.00")
        schedule = make_schedule("100.00")

        preview = service.preview_match_group(
            deposit.id, [line.id], [schedule.id], CardinalityType.ONE_TO_ONE,
            usage_amount=amount,
        )

        assert not preview.can_apply
        assert [i.code for i in preview.errors] == ["INVALID_AMOUNT"]

    def test_invalid_matrix_cell_names_pair(
        self, service, make_deposit, make_line, make_schedule,
    ):
        deposit = make_deposit()
        l1, l2 = make_line(deposit, "50.00"), make_line(deposit, "50.00")
        s1, s2 = make_schedule("70.00"), make_schedule("30.00")

        preview = service.preview_match_group(
            deposit.id, [l1.id, l2.id], [s1.id, s2.id], CardinalityType.MANY_TO_MANY,
            allocations=[
                AllocationInput(l1.id, s1.id, usage=Decimal("50.00")),
                AllocationInput(l2.id, s2.id, commission=Decimal("NaN")),
            ],
        )

        assert [(i.code, i.line_id, i.schedule_id) for i in preview.errors] == [
            ("INVALID_AMOUNT", l2.id, s2.id),
        ]

    def test_exact_match_needs_no_flex(self, service, make_deposit, make_line, make_schedule):
        deposit = make_deposit()
        line = make_line(deposit, "100.00", "10.00")
        schedule = make_schedule("100.00", "10.00")

        preview = service.preview_match_group(
            deposit.id, [line.id], [schedule.id], CardinalityType.ONE_TO_ONE,
        )

        assert preview.schedules[0].flex.action == FlexAction.NONE

class TestApply:

    def test_applies_previewed_plan(self, service, actor_id, make_deposit, make_line, make_schedule):
        deposit = make_deposit()
        line = make_line(deposit, "100.00", "10.00")
        schedule = make_schedule("100.00", "10.00")

        result = service.apply_match_group(
            deposit.id, [line.id], [schedule.id], CardinalityType.ONE_TO_ONE,
            actor_id=actor_id,
            usage_amount=Decimal("25.00"),
            commission_amount=Decimal("2.50"),
        )

        assert result.ok
        assert result.preview.plan.allocated_usage == Decimal("25.00")
        assert result.applied.flex_decisions[schedule.id].action == FlexAction.NONE
        assert schedule.actual_usage == Decimal("25.00")
        assert schedule.status == ScheduleStatus.UNDERPAID.value
        assert line.status == LineStatus.PARTIALLY_MATCHED.value

    def test_many_to_many_with_matrix(
        self, service, actor_id, make_deposit, make_line, make_schedule,
    ):
        deposit = make_deposit()
        l1, l2 = make_line(deposit, "50.00"), make_line(deposit, "50.00")
        s1, s2 = make_schedule("70.00"), make_schedule("30.00")

        result = service.apply_match_group(
            deposit.id, [l1.id, l2.id], [s1.id, s2.id], CardinalityType.MANY_TO_MANY,
            actor_id=actor_id,
            allocations=[
                AllocationInput(l1.id, s1.id, usage=Decimal("50.00")),
                AllocationInput(l2.id, s1.id, usage=Decimal("20.00")),
                AllocationInput(l2.id, s2.id, usage=Decimal("30.00")),
            ],
        )

        assert result.ok
        assert len(result.applied.match_ids) == 3
        assert s1.status == s2.status == ScheduleStatus.RECONCILED.value

    def test_rejected_preview_applies_nothing(
        self, session, service, actor_id, captured_logs, make_deposit, make_line, make_schedule,
    ):
        deposit = make_deposit()
        line = make_line(deposit, "100.00")
        schedule = make_schedule("100.00")

        result = service.apply_match_group(
            deposit.id, [line.id], [schedule.id, uuid4()], CardinalityType.ONE_TO_MANY,
            actor_id=actor_id,
        )

        assert not result.ok
        assert result.applied is None
        assert session.scalars(select(DepositLineMatch)).all() == []
        rejected = next(r for r in captured_logs() if r["message"] == "manual_match_rejected")
        assert rejected["error_codes"] == ["SCHEDULE_NOT_FOUND"]


class TestUndo:

    def test_reverse_and_unmatch(self, service, actor_id, make_deposit, make_line, make_schedule):
        deposit = make_deposit()
        line = make_line(deposit, "100.00")
        first = make_schedule("40.00")
        second = make_schedule("60.00")
        applied = service.apply_match_group(
            deposit.id, [line.id], [first.id], CardinalityType.ONE_TO_ONE,
            actor_id=actor_id, usage_amount=Decimal("40.00"),
        ).applied
        service.apply_match_group(
            deposit.id, [line.id], [second.id], CardinalityType.ONE_TO_ONE, actor_id=actor_id,
        )

        reversed_ = service.reverse_match_group(applied.match_group_id, actor_id=actor_id)
        assert reversed_.reversed_count == 1
        assert first.actual_usage == Decimal("0")
        assert line.status == LineStatus.PARTIALLY_MATCHED.value

        results = service.unmatch_line(line.id, actor_id=actor_id)
        assert [r.reversed_count for r in results] == [1]
        assert second.actual_usage == Decimal("0")
        assert line.status == LineStatus.UNMATCHED.value
