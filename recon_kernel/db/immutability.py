"""
Module: recon_kernel.db.immutability
Responsibility: ORM event listeners that make match records append-only.
Architecture position: Kernel > DB.  Imports models lazily inside the
    listener functions to avoid an import cycle with models/.

Invariants enforced:
    - DepositLineMatch: money, link and cardinality fields never change
      after insert.  Status moves only Applied -> Reversed.  A Reversed row
      is frozen.  Rows are never deleted.
    - DepositMatchGroup: status moves only Active -> FullyReversed and the
      row is never deleted.
    - Audit metadata (updated_at, updated_by_id) may always change.

Failure modes:
    - MatchImmutableError on a forbidden field change or delete.
    - InvalidMatchTransitionError on any other status transition.

Audit relevance:
    Reversal history is the audit trail for undo.  These listeners are the
    ORM-level guard; bulk UPDATE statements bypass them, so services only
    ever mutate match rows through the unit of work.
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from recon_kernel.exceptions import InvalidMatchTransitionError, MatchImmutableError
from recon_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})

_MATCH_MUTABLE_FIELDS = frozenset({"status", "reversed_at"}) | _AUDIT_FIELDS

_GROUP_MUTABLE_FIELDS = frozenset({"status", "reversed_at", "reversed_by_id"}) | _AUDIT_FIELDS


def _status_change(target) -> tuple[str | None, str | None]:
    """Return (old, new) status values, or (None, None) if unchanged."""
    hist = get_history(target, "status")
    if not hist.deleted and not hist.added:
        return None, None
    old = hist.deleted[0] if hist.deleted else None
    new = hist.added[0] if hist.added else None
    return old, new


def _changed_fields(target, allowed: frozenset[str]) -> list[str]:
    insp = inspect(target)
    return [
        attr.key
        for attr in insp.attrs
        if attr.key not in allowed and attr.history.has_changes()
    ]


def _block(entity_type: str, entity_id: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "field": field,
            "reason": reason,
        },
    )
    raise MatchImmutableError(entity_type=entity_type, entity_id=entity_id, reason=reason)


def _check_line_match_update(mapper, connection, target):
    """Only Applied -> Reversed (plus reversed_at) may change on a match row."""
    from recon_kernel.domain.types import MatchStatus
    from recon_kernel.models.match import DepositLineMatch

    if not isinstance(target, DepositLineMatch):
        return

    changed = _changed_fields(target, _MATCH_MUTABLE_FIELDS)
    if changed:
        _block(
            "DepositLineMatch",
            str(target.id),
            f"Cannot modify field '{changed[0]}' on a match record",
            field=changed[0],
        )

    old, new = _status_change(target)
    if old is None and new is None:
        if (
            target.status == MatchStatus.REVERSED.value
            and get_history(target, "reversed_at").has_changes()
        ):
            _block(
                "DepositLineMatch",
                str(target.id),
                "Reversed matches are frozen",
                field="reversed_at",
            )
        return

    if old != MatchStatus.APPLIED.value or new != MatchStatus.REVERSED.value:
        logger.error(
            "invalid_match_transition_blocked",
            extra={"match_id": str(target.id), "from_status": old, "to_status": new},
        )
        raise InvalidMatchTransitionError(
            match_id=str(target.id), from_status=str(old), to_status=str(new),
        )


def _check_line_match_delete(mapper, connection, target):
    _block("DepositLineMatch", str(target.id), "Match records cannot be deleted")


def _check_match_group_update(mapper, connection, target):
    """Only Active -> FullyReversed (plus reversal stamps) may change on a group."""
    from recon_kernel.domain.types import MatchGroupStatus
    from recon_kernel.models.match import DepositMatchGroup

    if not isinstance(target, DepositMatchGroup):
        return

    changed = _changed_fields(target, _GROUP_MUTABLE_FIELDS)
    if changed:
        _block(
            "DepositMatchGroup",
            str(target.id),
            f"Cannot modify field '{changed[0]}' on a match group",
            field=changed[0],
        )

    old, new = _status_change(target)
    if old is None and new is None:
        return
    if (
        old != MatchGroupStatus.ACTIVE.value
        or new != MatchGroupStatus.FULLY_REVERSED.value
    ):
        raise InvalidMatchTransitionError(
            match_id=str(target.id), from_status=str(old), to_status=str(new),
        )


def _check_match_group_delete(mapper, connection, target):
    _block("DepositMatchGroup", str(target.id), "Match groups cannot be deleted")


def register_immutability_listeners():
    """
    Register the append-only listeners for match records.

    Call once after models are imported and before any session flushes.
    """
    from recon_kernel.models.match import DepositLineMatch, DepositMatchGroup

    event.listen(DepositLineMatch, "before_update", _check_line_match_update)
    event.listen(DepositLineMatch, "before_delete", _check_line_match_delete)
    event.listen(DepositMatchGroup, "before_update", _check_match_group_update)
    event.listen(DepositMatchGroup, "before_delete", _check_match_group_delete)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener if it is registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove the append-only listeners.

    WARNING: Only use this in tests that deliberately corrupt match rows.
    """
    from recon_kernel.models.match import DepositLineMatch, DepositMatchGroup

    _safe_remove_listener(DepositLineMatch, "before_update", _check_line_match_update)
    _safe_remove_listener(DepositLineMatch, "before_delete", _check_line_match_delete)
    _safe_remove_listener(DepositMatchGroup, "before_update", _check_match_group_update)
    _safe_remove_listener(DepositMatchGroup, "before_delete", _check_match_group_delete)
