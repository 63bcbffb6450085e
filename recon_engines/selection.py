"""
Module: recon_engines.selection
Responsibility:
    Structural gate between a user's selection and the allocation planner:
    does the claimed cardinality type fit the number of selected lines and
    schedules?  Also the pure ``detect_cardinality`` helper the wizard
    uses to pre-select a type from live selection counts.

Architecture position:
    Engines -- pure, zero I/O.  Does not look at money.

Invariants enforced:
    - OneToOne: 1 line, 1 schedule.  OneToMany: 1 line, >=2 schedules.
      ManyToOne: >=2 lines, 1 schedule.  ManyToMany: >=2 and >=2.
    - A mismatch is reported, never coerced to another type.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from recon_engines.tracer import traced_engine
from recon_kernel.domain.dtos import ValidationError
from recon_kernel.domain.types import CardinalityType


def is_compatible(cardinality_type: CardinalityType, line_count: int, schedule_count: int) -> bool:
    """True iff the counts fit ``cardinality_type``."""
    if line_count < 1 or schedule_count < 1:
        return False
    if cardinality_type == CardinalityType.ONE_TO_ONE:
        return line_count == 1 and schedule_count == 1
    if cardinality_type == CardinalityType.ONE_TO_MANY:
        return line_count == 1 and schedule_count >= 2
    if cardinality_type == CardinalityType.MANY_TO_ONE:
        return line_count >= 2 and schedule_count == 1
    if cardinality_type == CardinalityType.MANY_TO_MANY:
        return line_count >= 2 and schedule_count >= 2
    return False


def detect_cardinality(line_count: int, schedule_count: int) -> CardinalityType | None:
    """The only type compatible with the counts, or None if a side is empty."""
    if line_count < 1 or schedule_count < 1:
        return None
    if line_count == 1:
        return CardinalityType.ONE_TO_ONE if schedule_count == 1 else CardinalityType.ONE_TO_MANY
    if schedule_count == 1:
        return CardinalityType.MANY_TO_ONE
    return CardinalityType.MANY_TO_MANY


@dataclass(frozen=True)
class SelectionCheck:
    """Outcome of validate_selection(); ``error`` is set iff not compatible."""

    compatible: bool
    cardinality_type: CardinalityType
    line_count: int
    schedule_count: int
    detected_type: CardinalityType | None
    error: ValidationError | None = None


@traced_engine("selection", "1.0", fingerprint_fields=("cardinality_type",))
def validate_selection(
    *,
    cardinality_type: CardinalityType,
    line_ids: Sequence[object],
    schedule_ids: Sequence[object],
) -> SelectionCheck:
    """
    Check a selection against a claimed cardinality type.

    Duplicate ids count once.  An incompatible selection carries a
    SELECTION_INCOMPATIBLE error naming the type the counts imply.
    """
    line_count = len(set(line_ids))
    schedule_count = len(set(schedule_ids))
    detected = detect_cardinality(line_count, schedule_count)

    if is_compatible(cardinality_type, line_count, schedule_count):
        return SelectionCheck(
            compatible=True,
            cardinality_type=cardinality_type,
            line_count=line_count,
            schedule_count=schedule_count,
            detected_type=detected,
        )

    if detected is None:
        message = "Select at least one deposit line and one revenue schedule"
    else:
        message = (
            f"{cardinality_type.value} does not fit {line_count} line(s) and "
            f"{schedule_count} schedule(s); the selection is {detected.value}"
        )
    return SelectionCheck(
        compatible=False,
        cardinality_type=cardinality_type,
        line_count=line_count,
        schedule_count=schedule_count,
        detected_type=detected,
        error=ValidationError(
            code="SELECTION_INCOMPATIBLE",
            message=message,
            field="cardinality_type",
            details={
                "line_count": line_count,
                "schedule_count": schedule_count,
                "detected_type": detected.value if detected else None,
            },
        ),
    )
