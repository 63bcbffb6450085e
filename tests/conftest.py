"""
Pytest fixtures for the reconciliation test suite.

Provides:
- Structured logging capture
- A fresh in-memory SQLite database per test (immutability listeners on)
- A deterministic clock and the default matching configuration
- Entity factories for deposits, deposit lines and revenue schedules

Environment Variables:
- DATABASE_URL: PostgreSQL connection URL used only by tests marked
  ``postgres`` (concurrency tests).  Those tests are skipped when unset.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from recon_config.schema import MatchingConfig
from recon_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from recon_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from recon_kernel.domain.clock import DeterministicClock
from recon_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from recon_kernel.models import Deposit, DepositLineItem, RevenueSchedule

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()
TEST_TENANT_ID = uuid4()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture recon_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, executor):
            executor.apply(plan, actor_id=actor)
            logs = captured_logs()
            assert any(r["message"] == "match_group_applied" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("recon_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database with all tables and listeners."""
    eng = init_engine_from_url("sqlite://")
    create_tables()
    register_immutability_listeners()
    yield eng
    unregister_immutability_listeners()
    drop_tables()
    reset_engine()


@pytest.fixture
def pg_engine():
    """PostgreSQL engine for concurrency tests; skipped without DATABASE_URL."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set")
    eng = init_engine_from_url(url, pool_size=20, max_overflow=10, pool_timeout=10)
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield eng
    unregister_immutability_listeners()
    drop_tables()
    reset_engine()


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    sess = get_session()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture
def tenant_id() -> UUID:
    return TEST_TENANT_ID


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def config() -> MatchingConfig:
    return MatchingConfig()


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_deposit(session, tenant_id, actor_id):
    def _make(**overrides) -> Deposit:
        values = dict(
            id=uuid4(),
            tenant_id=tenant_id,
            deposit_name="March deposit",
            deposit_date=date(2024, 3, 1),
            created_by_id=actor_id,
        )
        values.update(overrides)
        deposit = Deposit(**values)
        session.add(deposit)
        session.flush()
        return deposit

    return _make


@pytest.fixture
def make_line(session, actor_id):
    counter = {"n": 0}

    def _make(deposit: Deposit, usage="0", commission="0", **overrides) -> DepositLineItem:
        counter["n"] += 1
        values = dict(
            id=uuid4(),
            deposit_id=deposit.id,
            tenant_id=deposit.tenant_id,
            line_number=counter["n"],
            usage=Decimal(str(usage)),
            commission=Decimal(str(commission)),
            payment_date=date(2024, 3, 1),
            created_by_id=actor_id,
        )
        values.update(overrides)
        line = DepositLineItem(**values)
        session.add(line)
        session.flush()
        return line

    return _make


@pytest.fixture
def make_schedule(session, tenant_id, actor_id):
    def _make(usage="0", commission="0", **overrides) -> RevenueSchedule:
        values = dict(
            id=uuid4(),
            tenant_id=tenant_id,
            expected_usage_gross=Decimal(str(usage)),
            expected_commission_gross=Decimal(str(commission)),
            schedule_date=date(2024, 3, 1),
            created_by_id=actor_id,
        )
        values.update(overrides)
        schedule = RevenueSchedule(**values)
        session.add(schedule)
        session.flush()
        return schedule

    return _make
