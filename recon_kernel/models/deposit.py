"""
ORM models for deposits and deposit line items.

Contract:
    Deposit import (outside this package) creates both.  ``usage`` and
    ``commission`` on a line are the reported totals and never change.
    The match executor maintains the allocation bookkeeping columns and
    the deposit-level aggregates.

Invariants enforced:
    - ``usage_allocated <= usage`` (+ tolerance), commission likewise,
      checked under row lock inside every apply.
    - ``reconciled`` lines belong to a finalized deposit and are locked
      against new matches and reversals.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recon_kernel.db.base import TrackedBase, UUIDString
from recon_kernel.domain.dtos import LineSnapshot
from recon_kernel.domain.types import DepositStatus, LineStatus


class Deposit(TrackedBase):
    """A vendor/distributor deposit and its persisted aggregates."""

    __tablename__ = "recon_deposits"

    __table_args__ = (
        Index("ix_recon_deposits_tenant_status", "tenant_id", "status"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    deposit_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deposit_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    distributor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    vendor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_reconciled: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_unreconciled: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_usage: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    usage_allocated: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    usage_unallocated: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0"),
    )
    total_commission: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0"),
    )
    commission_allocated: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0"),
    )
    commission_unallocated: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0"),
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DepositStatus.PENDING.value,
    )
    reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reconciled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    lines: Mapped[list["DepositLineItem"]] = relationship(
        "DepositLineItem",
        back_populates="deposit",
        order_by="DepositLineItem.line_number",
    )


class DepositLineItem(TrackedBase):
    """One row of a deposit file plus its allocation bookkeeping."""

    __tablename__ = "recon_deposit_line_items"

    __table_args__ = (
        Index("ix_recon_lines_deposit", "deposit_id", "line_number"),
        Index("ix_recon_lines_tenant_status", "tenant_id", "status"),
    )

    deposit_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("recon_deposits.id"), nullable=False,
    )
    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    usage: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    commission: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    usage_allocated: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    commission_allocated: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0"),
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LineStatus.UNMATCHED.value,
    )
    reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reconciled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Linkage hints, as reported and as resolved during import
    account_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vendor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    distributor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    product_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    primary_revenue_schedule_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("recon_revenue_schedules.id"), nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    deposit: Mapped[Deposit] = relationship("Deposit", back_populates="lines")

    __mapper_args__ = {"version_id_col": version}

    def to_snapshot(self) -> LineSnapshot:
        return LineSnapshot(
            line_id=self.id,
            deposit_id=self.deposit_id,
            tenant_id=self.tenant_id,
            line_number=self.line_number,
            usage=self.usage,
            commission=self.commission,
            usage_allocated=self.usage_allocated or Decimal("0"),
            commission_allocated=self.commission_allocated or Decimal("0"),
            status=LineStatus(self.status),
            reconciled=self.reconciled,
            account_id=self.account_id,
            account_name=self.account_name,
            vendor_id=self.vendor_id,
            distributor_id=self.distributor_id,
            product_id=self.product_id,
            product_name=self.product_name,
            order_id=self.order_id,
            payment_date=self.payment_date,
            primary_revenue_schedule_id=self.primary_revenue_schedule_id,
        )
