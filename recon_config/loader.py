"""
Configuration Loader (``recon_config.loader``).

Responsibility
--------------
Reads a YAML configuration set and parses it into a ``MatchingConfig``.
Runtime callers go through ``recon_config.get_active_config()``.

Invariants enforced
-------------------
* Decimal fields are parsed from strings (or ints), never through float,
  so "0.005" stays exactly 0.005.
* Unknown keys raise ``ValueError``; there are no silently ignored
  settings.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Bad values  -> ``ValueError`` (from parsing or ``__post_init__``).
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from recon_config.schema import MatchingConfig, SignalWeights

_DECIMAL_FIELDS = frozenset({
    "tolerance",
    "amount_match_tolerance",
    "money_quantum",
    "auto_match_threshold",
    "suggestion_threshold",
    "flex_variance_tolerance",
})
_INT_FIELDS = frozenset({
    "candidate_limit",
    "date_window_days",
    "max_retries",
    "preview_workers",
})
_BOOL_FIELDS = frozenset({"include_future_schedules"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, name: str) -> Decimal:
    """Parse a Decimal from a YAML scalar without going through float."""
    if isinstance(value, bool):
        raise ValueError(f"{name}: expected a number, got {value!r}")
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{name}: cannot parse decimal from {value!r}") from None
    if not result.is_finite():
        raise ValueError(f"{name}: must be finite")
    return result


def parse_matching_fields(data: dict[str, Any], context: str = "matching") -> dict[str, Any]:
    """Convert a mapping of matching settings into typed keyword arguments."""
    parsed: dict[str, Any] = {}
    for key, value in data.items():
        if key in _DECIMAL_FIELDS:
            parsed[key] = parse_decimal(value, f"{context}.{key}")
        elif key in _INT_FIELDS:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{context}.{key}: expected an integer, got {value!r}")
            parsed[key] = value
        elif key in _BOOL_FIELDS:
            if not isinstance(value, bool):
                raise ValueError(f"{context}.{key}: expected a boolean, got {value!r}")
            parsed[key] = value
        else:
            raise ValueError(f"{context}: unknown setting {key!r}")
    return parsed


def parse_weights(data: dict[str, Any]) -> SignalWeights:
    known = {f.name for f in fields(SignalWeights)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"weights: unknown signal(s) {sorted(unknown)}")
    return SignalWeights(
        **{key: parse_decimal(value, f"weights.{key}") for key, value in data.items()}
    )


def parse_config(data: dict[str, Any]) -> MatchingConfig:
    """
    Build a MatchingConfig from a parsed YAML document.

    Expected top-level keys: ``matching``, ``weights``, ``tenants`` (all
    optional; defaults fill anything missing).
    """
    unknown = set(data) - {"matching", "weights", "tenants"}
    if unknown:
        raise ValueError(f"unknown configuration section(s) {sorted(unknown)}")

    kwargs = parse_matching_fields(data.get("matching") or {})
    if data.get("weights"):
        kwargs["weights"] = parse_weights(data["weights"])

    tenants = data.get("tenants") or {}
    kwargs["tenant_overrides"] = {
        str(tenant_id): parse_matching_fields(overrides or {}, f"tenants.{tenant_id}")
        for tenant_id, overrides in tenants.items()
    }
    return MatchingConfig(**kwargs)


def load_config(path: Path) -> MatchingConfig:
    """Load and parse one configuration set file."""
    return parse_config(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 of a parsed configuration document."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
