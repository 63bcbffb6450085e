"""
Tests for deposit finalization.

Finalizing locks matched lines against further matching and reversal;
unfinalizing releases them.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from recon_engines.allocation import AllocationPlanner, AllocationRequest
from recon_kernel.domain.types import (
    CardinalityType,
    DepositStatus,
    LineStatus,
    ScheduleStatus,
)
from recon_kernel.exceptions import (
    DepositFinalizationError,
    DepositNotFoundError,
    LineLockedError,
)
from recon_services.deposit_lifecycle import DepositLifecycleService
from recon_services.match_executor import MatchExecutor


@pytest.fixture
def lifecycle(session, config, clock):
    return DepositLifecycleService(session, config, clock)


@pytest.fixture
def matched_deposit(session, config, clock, actor_id, make_deposit, make_line, make_schedule):
    deposit = make_deposit()
    line = make_line(deposit, "100.00", "10.00")
    ignored = make_line(deposit, "3.00", status=LineStatus.IGNORED.value)
    schedule = make_schedule("100.00", "10.00")
    outcome = AllocationPlanner(config).plan(request=AllocationRequest(
        cardinality_type=CardinalityType.ONE_TO_ONE,
        lines=(line.to_snapshot(),),
        schedules=(schedule.to_snapshot(),),
    ))
    applied = MatchExecutor(session, config, clock).apply(outcome.plan, actor_id=actor_id)
    return {
        "deposit": deposit,
        "line": line,
        "ignored": ignored,
        "schedule": schedule,
        "match_group_id": applied.match_group_id,
    }


class TestFinalize:

    def test_locks_matched_lines(self, lifecycle, actor_id, matched_deposit):
        deposit = matched_deposit["deposit"]

        result = lifecycle.finalize_deposit(deposit.id, actor_id=actor_id)

        assert result.status == DepositStatus.COMPLETED
        assert result.locked_line_count == 1
        assert result.schedule_statuses == {
            matched_deposit["schedule"].id: ScheduleStatus.RECONCILED,
        }
        assert deposit.reconciled
        assert deposit.reconciled_at is not None
        assert matched_deposit["line"].reconciled
        assert not matched_deposit["ignored"].reconciled

    def test_locked_line_cannot_be_reversed(
        self, session, config, clock, lifecycle, actor_id, matched_deposit,
    ):
        lifecycle.finalize_deposit(matched_deposit["deposit"].id, actor_id=actor_id)
        executor = MatchExecutor(session, config, clock)

        with pytest.raises(LineLockedError):
            executor.reverse(matched_deposit["match_group_id"], actor_id=actor_id)

        assert matched_deposit["schedule"].actual_usage == Decimal("100.00")

    def test_blocked_by_unmatched_line(
        self, lifecycle, actor_id, captured_logs, matched_deposit, make_line,
    ):
        make_line(matched_deposit["deposit"], "20.00")

        with pytest.raises(DepositFinalizationError) as exc_info:
            lifecycle.finalize_deposit(matched_deposit["deposit"].id, actor_id=actor_id)

        assert "unmatched" in str(exc_info.value)
        assert not matched_deposit["deposit"].reconciled
        assert not matched_deposit["line"].reconciled
        assert any(r["message"] == "deposit_finalize_blocked" for r in captured_logs())

    def test_cannot_finalize_twice(self, lifecycle, actor_id, matched_deposit):
        lifecycle.finalize_deposit(matched_deposit["deposit"].id, actor_id=actor_id)

        with pytest.raises(DepositFinalizationError):
            lifecycle.finalize_deposit(matched_deposit["deposit"].id, actor_id=actor_id)

    def test_unknown_deposit(self, lifecycle, actor_id):
        with pytest.raises(DepositNotFoundError):
            lifecycle.finalize_deposit(uuid4(), actor_id=actor_id)


class TestUnfinalize:

    def test_releases_lines(self, session, config, clock, lifecycle, actor_id, matched_deposit):
        deposit = matched_deposit["deposit"]
        lifecycle.finalize_deposit(deposit.id, actor_id=actor_id)

        result = lifecycle.unfinalize_deposit(deposit.id, actor_id=actor_id)

        assert result.locked_line_count == 1
        assert not deposit.reconciled
        assert deposit.reconciled_at is None
        assert not matched_deposit["line"].reconciled
        assert deposit.status == DepositStatus.COMPLETED.value

        reversed_ = MatchExecutor(session, config, clock).reverse(
            matched_deposit["match_group_id"], actor_id=actor_id,
        )
        assert reversed_.reversed_count == 1
        assert deposit.status == DepositStatus.IN_REVIEW.value

    def test_requires_finalized_deposit(self, lifecycle, actor_id, matched_deposit):
        with pytest.raises(DepositFinalizationError):
            lifecycle.unfinalize_deposit(matched_deposit["deposit"].id, actor_id=actor_id)
