"""
Domain Data Transfer Objects.

Responsibility:
    Immutable snapshots of revenue schedules and deposit lines handed to the
    pure engines, plus the ValidationError used to return user-correctable
    problems as values instead of exceptions.

Architecture position:
    Kernel > Domain.  No ORM, no session.  Models produce these via
    ``to_snapshot()``; engines consume them.

Invariants enforced:
    - All DTOs are frozen dataclasses.
    - Money fields are Decimal.  Nullable money means "not supplied",
      which the metrics calculator treats differently from zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from recon_kernel.domain.types import LineStatus, ScheduleStatus

ZERO = Decimal("0")


@dataclass(frozen=True)
class ValidationError:
    """
    A single user-correctable validation problem.

    Contract:
        Carries a machine-readable code, a display message, an optional
        field path and optional structured details.

    Non-goals:
        - Does NOT raise -- it IS the error representation.
    """

    code: str
    message: str
    field: str | None = None
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class ScheduleSnapshot:
    """
    Read-only view of a revenue schedule as seen by the engines.

    ``applied_match_count`` lets status derivation tell "nothing applied
    yet" (Unreconciled) apart from "applied and short" (Underpaid).
    """

    schedule_id: UUID
    tenant_id: UUID
    expected_usage_gross: Decimal | None = None
    usage_adjustment: Decimal | None = None
    actual_usage: Decimal = ZERO
    expected_commission_gross: Decimal | None = None
    commission_adjustment: Decimal | None = None
    actual_commission: Decimal = ZERO
    expected_commission_rate: Decimal | None = None
    status: ScheduleStatus = ScheduleStatus.UNRECONCILED
    account_id: UUID | None = None
    account_name: str | None = None
    vendor_id: UUID | None = None
    distributor_id: UUID | None = None
    product_id: UUID | None = None
    product_name: str | None = None
    order_id: str | None = None
    schedule_date: date | None = None
    deleted: bool = False
    applied_match_count: int = 0


@dataclass(frozen=True)
class LineSnapshot:
    """Read-only view of a deposit line item as seen by the engines."""

    line_id: UUID
    deposit_id: UUID
    tenant_id: UUID
    line_number: int
    usage: Decimal
    commission: Decimal
    usage_allocated: Decimal = ZERO
    commission_allocated: Decimal = ZERO
    status: LineStatus = LineStatus.UNMATCHED
    reconciled: bool = False
    account_id: UUID | None = None
    account_name: str | None = None
    vendor_id: UUID | None = None
    distributor_id: UUID | None = None
    product_id: UUID | None = None
    product_name: str | None = None
    order_id: str | None = None
    payment_date: date | None = None
    primary_revenue_schedule_id: UUID | None = None

    @property
    def usage_remaining(self) -> Decimal:
        return self.usage - self.usage_allocated

    @property
    def commission_remaining(self) -> Decimal:
        return self.commission - self.commission_allocated
