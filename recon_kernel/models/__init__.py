"""SQLAlchemy ORM models for the reconciliation engine."""

from recon_kernel.models.deposit import Deposit, DepositLineItem
from recon_kernel.models.match import DepositLineMatch, DepositMatchGroup
from recon_kernel.models.revenue_schedule import RevenueSchedule

__all__ = [
    "Deposit",
    "DepositLineItem",
    "DepositLineMatch",
    "DepositMatchGroup",
    "RevenueSchedule",
]
