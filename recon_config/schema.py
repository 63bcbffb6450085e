"""
Configuration schema (``recon_config.schema``).

Responsibility:
    Frozen dataclasses describing matching configuration: variance
    tolerance, confidence thresholds, signal weights and batch knobs.

Architecture position:
    Config layer -- pure dataclasses, no I/O.  Engines receive a
    ``MatchingConfig`` as an explicit argument; nothing reads module-level
    constants.

Invariants enforced:
    - Amounts and thresholds are Decimal, never float.
    - Thresholds lie in [0, 1]; tolerances are non-negative; at least one
      signal weight is positive.  Violations raise ``ValueError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class SignalWeights:
    """Relative weight of each ranking signal. Normalized at scoring time."""

    usage_amount: Decimal = Decimal("0.30")
    commission_amount: Decimal = Decimal("0.15")
    account: Decimal = Decimal("0.20")
    vendor: Decimal = Decimal("0.15")
    product: Decimal = Decimal("0.10")
    date_proximity: Decimal = Decimal("0.10")

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"signal weight {f.name} cannot be negative")
        if self.total <= 0:
            raise ValueError("at least one signal weight must be positive")

    @property
    def total(self) -> Decimal:
        return sum((getattr(self, f.name) for f in fields(self)), Decimal("0"))

    def as_dict(self) -> dict[str, Decimal]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class MatchingConfig:
    """
    Matching and allocation configuration.

    Contract:
        Immutable; validated in ``__post_init__``.  ``for_tenant()``
        returns a copy with a tenant's overrides applied.

    Guarantees:
        - ``tolerance`` is an absolute currency amount, not a percentage.
        - ``suggestion_threshold <= auto_match_threshold``.
        - ``flex_variance_tolerance`` is a fraction of expected net; an
          overage within it is auto-adjusted rather than prompted.
    """

    tolerance: Decimal = Decimal("0.005")
    amount_match_tolerance: Decimal = Decimal("0.01")
    money_quantum: Decimal = Decimal("0.01")
    auto_match_threshold: Decimal = Decimal("0.95")
    suggestion_threshold: Decimal = Decimal("0.75")
    flex_variance_tolerance: Decimal = Decimal("0")
    candidate_limit: int = 15
    date_window_days: int = 31
    include_future_schedules: bool = False
    max_retries: int = 3
    preview_workers: int = 1
    weights: SignalWeights = field(default_factory=SignalWeights)
    tenant_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        if self.tolerance < 0:
            raise ValueError("tolerance cannot be negative")
        if self.amount_match_tolerance < 0:
            raise ValueError("amount_match_tolerance cannot be negative")
        if self.money_quantum <= 0:
            raise ValueError("money_quantum must be positive")
        for name in ("auto_match_threshold", "suggestion_threshold", "flex_variance_tolerance"):
            value = getattr(self, name)
            if not Decimal("0") <= value <= Decimal("1"):
                raise ValueError(f"{name} must be between 0 and 1")
        if self.suggestion_threshold > self.auto_match_threshold:
            raise ValueError("suggestion_threshold cannot exceed auto_match_threshold")
        if self.candidate_limit <= 0:
            raise ValueError("candidate_limit must be positive")
        if self.date_window_days <= 0:
            raise ValueError("date_window_days must be positive")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.preview_workers < 1:
            raise ValueError("preview_workers must be at least 1")

    def for_tenant(self, tenant_id: object | None) -> MatchingConfig:
        """Apply the overrides registered for ``tenant_id`` (if any)."""
        if tenant_id is None:
            return self
        overrides = self.tenant_overrides.get(str(tenant_id))
        if not overrides:
            return self
        return replace(self, **overrides)
