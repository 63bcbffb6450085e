"""
Tests for the selection validator.

Covers:
- Exhaustive cardinality gate over 0-5 lines x 0-5 schedules
- Cardinality detection
- Duplicate ids, error payloads and messages
"""

from itertools import product
from uuid import uuid4

import pytest

from recon_engines.selection import detect_cardinality, is_compatible, validate_selection
from recon_kernel.domain.types import CardinalityType


def _expected(cardinality_type: CardinalityType, lines: int, schedules: int) -> bool:
    if cardinality_type == CardinalityType.ONE_TO_ONE:
        return lines == 1 and schedules == 1
    if cardinality_type == CardinalityType.ONE_TO_MANY:
        return lines == 1 and schedules >= 2
    if cardinality_type == CardinalityType.MANY_TO_ONE:
        return lines >= 2 and schedules == 1
    return lines >= 2 and schedules >= 2


class TestCardinalityGate:

    @pytest.mark.parametrize(
        "cardinality_type,lines,schedules",
        list(product(CardinalityType, range(6), range(6))),
    )
    def test_gate_matches_table(self, cardinality_type, lines, schedules):
        assert is_compatible(cardinality_type, lines, schedules) == _expected(
            cardinality_type, lines, schedules,
        )

    @pytest.mark.parametrize("lines,schedules", list(product(range(1, 6), range(1, 6))))
    def test_exactly_one_type_fits_every_non_empty_selection(self, lines, schedules):
        fitting = [t for t in CardinalityType if is_compatible(t, lines, schedules)]

        assert fitting == [detect_cardinality(lines, schedules)]

    @pytest.mark.parametrize("lines,schedules", [(0, 0), (0, 3), (2, 0)])
    def test_empty_side_detects_nothing(self, lines, schedules):
        assert detect_cardinality(lines, schedules) is None


class TestValidateSelection:

    def test_compatible_selection(self):
        check = validate_selection(
            cardinality_type=CardinalityType.ONE_TO_MANY,
            line_ids=[uuid4()],
            schedule_ids=[uuid4(), uuid4()],
        )

        assert check.compatible
        assert check.error is None
        assert check.detected_type == CardinalityType.ONE_TO_MANY

    def test_incompatible_selection_names_detected_type(self):
        check = validate_selection(
            cardinality_type=CardinalityType.ONE_TO_ONE,
            line_ids=[uuid4(), uuid4()],
            schedule_ids=[uuid4()],
        )

        assert not check.compatible
        assert check.error.code == "SELECTION_INCOMPATIBLE"
        assert check.detected_type == CardinalityType.MANY_TO_ONE
        assert "ManyToOne" in check.error.message

    def test_duplicate_ids_count_once(self):
        line_id = uuid4()

        check = validate_selection(
            cardinality_type=CardinalityType.ONE_TO_ONE,
            line_ids=[line_id, line_id],
            schedule_ids=[uuid4()],
        )

        assert check.compatible
        assert check.line_count == 1

    def test_empty_selection_message(self):
        check = validate_selection(
            cardinality_type=CardinalityType.ONE_TO_ONE,
            line_ids=[],
            schedule_ids=[],
        )

        assert not check.compatible
        assert check.detected_type is None
        assert "at least one" in check.error.message
