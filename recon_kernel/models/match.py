"""
ORM models for match groups and deposit line matches.

Contract:
    One apply call creates exactly one DepositMatchGroup and one
    DepositLineMatch per (line, schedule) allocation pair.  Reversal flips
    statuses to Reversed and stamps ``reversed_at``; rows are never
    deleted and money fields never change (see db/immutability.py).

Invariants enforced:
    - Match status transitions only Applied -> Reversed.
    - A group is Active while any member is Applied, FullyReversed once
      every member is Reversed.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recon_kernel.db.base import TrackedBase, UUIDString
from recon_kernel.domain.types import MatchGroupStatus, MatchSource, MatchStatus


class DepositMatchGroup(TrackedBase):
    """Unit of atomicity and undo for one apply call."""

    __tablename__ = "recon_match_groups"

    __table_args__ = (
        Index("ix_recon_match_groups_deposit", "deposit_id", "status"),
    )

    deposit_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("recon_deposits.id"), nullable=False,
    )
    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    cardinality_type: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MatchSource.MANUAL.value,
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MatchGroupStatus.ACTIVE.value,
    )
    reversed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    reversed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    matches: Mapped[list["DepositLineMatch"]] = relationship(
        "DepositLineMatch",
        back_populates="match_group",
    )


class DepositLineMatch(TrackedBase):
    """One allocation edge between a deposit line and a revenue schedule."""

    __tablename__ = "recon_deposit_line_matches"

    __table_args__ = (
        Index("ix_recon_matches_group", "match_group_id"),
        Index("ix_recon_matches_line_status", "deposit_line_item_id", "status"),
        Index("ix_recon_matches_schedule_status", "revenue_schedule_id", "status"),
    )

    match_group_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("recon_match_groups.id"), nullable=False,
    )
    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    deposit_line_item_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("recon_deposit_line_items.id"), nullable=False,
    )
    revenue_schedule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("recon_revenue_schedules.id"), nullable=False,
    )
    cardinality_type: Mapped[str] = mapped_column(String(20), nullable=False)
    allocated_usage: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0"),
    )
    allocated_commission: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("0"),
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MatchStatus.APPLIED.value,
    )
    source: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MatchSource.MANUAL.value,
    )
    confidence: Mapped[Decimal | None] = mapped_column(
        Numeric(6, 4), nullable=True,
    )
    reasons: Mapped[list | None] = mapped_column(JSON, nullable=True)
    reversed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    match_group: Mapped[DepositMatchGroup] = relationship(
        "DepositMatchGroup", back_populates="matches",
    )
