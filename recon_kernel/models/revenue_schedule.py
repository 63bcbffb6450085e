"""
ORM model for revenue schedules.

Contract:
    A RevenueSchedule is one forecast line of expected recurring revenue.
    Forecast generation (outside this package) creates it; the match
    executor is the only writer of ``actual_usage``, ``actual_commission``
    and ``status``.

Invariants enforced:
    - ``actual_usage`` equals the sum of ``allocated_usage`` over the
      schedule's Applied matches (commission likewise).  Maintained by the
      match executor and checkable with ``resync_schedule``.
    - ``version`` is an optimistic version counter; a stale UPDATE raises
      StaleDataError, translated to ConcurrentModificationError by services.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, DateTime, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import TrackedBase, UUIDString
from recon_kernel.domain.dtos import ScheduleSnapshot
from recon_kernel.domain.types import ScheduleStatus


class RevenueSchedule(TrackedBase):
    """Persistent revenue schedule with expected and actual figures."""

    __tablename__ = "recon_revenue_schedules"

    __table_args__ = (
        Index("ix_recon_schedules_tenant_status", "tenant_id", "status"),
        Index("ix_recon_schedules_account", "account_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    account_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    distributor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    vendor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    product_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    opportunity_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    schedule_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    expected_usage_gross: Mapped[Decimal | None] = mapped_column(nullable=True)
    usage_adjustment: Mapped[Decimal | None] = mapped_column(nullable=True)
    actual_usage: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    expected_commission_gross: Mapped[Decimal | None] = mapped_column(nullable=True)
    commission_adjustment: Mapped[Decimal | None] = mapped_column(nullable=True)
    actual_commission: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0"),
    )
    expected_commission_rate: Mapped[Decimal | None] = mapped_column(
        Numeric(20, 10), nullable=True,
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ScheduleStatus.UNRECONCILED.value,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_snapshot(self, applied_match_count: int = 0) -> ScheduleSnapshot:
        return ScheduleSnapshot(
            schedule_id=self.id,
            tenant_id=self.tenant_id,
            expected_usage_gross=self.expected_usage_gross,
            usage_adjustment=self.usage_adjustment,
            actual_usage=self.actual_usage or Decimal("0"),
            expected_commission_gross=self.expected_commission_gross,
            commission_adjustment=self.commission_adjustment,
            actual_commission=self.actual_commission or Decimal("0"),
            expected_commission_rate=self.expected_commission_rate,
            status=ScheduleStatus(self.status),
            account_id=self.account_id,
            account_name=self.account_name,
            vendor_id=self.vendor_id,
            distributor_id=self.distributor_id,
            product_id=self.product_id,
            product_name=self.product_name,
            order_id=self.order_id,
            schedule_date=self.schedule_date,
            deleted=self.deleted_at is not None,
            applied_match_count=applied_match_count,
        )
