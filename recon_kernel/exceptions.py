"""
Typed Exception Hierarchy for the Reconciliation Engine.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ReconKernelError:

    ReconKernelError (base)
    |
    +-- SelectionError
    |   +-- SelectionIncompatibleError
    |   +-- LineLockedError
    |
    +-- AllocationError
    |   +-- AllocationPolicyUnsupportedError
    |   +-- InvalidAmountError
    |   +-- ConservationViolationError
    |       +-- LineOverallocationError
    |
    +-- NotFoundError
    |   +-- RevenueScheduleNotFoundError
    |   +-- DepositLineNotFoundError
    |   +-- DepositNotFoundError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentModificationError
    |
    +-- MatchImmutabilityError
    |   +-- MatchImmutableError
    |   +-- InvalidMatchTransitionError
    |
    +-- DepositFinalizationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                            | When Raised
--------------|---------------------------------|-----------------------------------
Selection     | SELECTION_INCOMPATIBLE          | Cardinality type vs. line/schedule counts
              | LINE_LOCKED                     | Line belongs to a finalized deposit
--------------|---------------------------------|-----------------------------------
Allocation    | ALLOCATION_POLICY_UNSUPPORTED   | N:M without an explicit matrix
              | INVALID_AMOUNT                  | Non-finite or negative money input
              | CONSERVATION_VIOLATION          | Plan totals differ from selection totals
              | LINE_OVERALLOCATED              | Apply would exceed a line's usage/commission
--------------|---------------------------------|-----------------------------------
Not found     | REVENUE_SCHEDULE_NOT_FOUND      | Schedule id unknown for tenant
              | DEPOSIT_LINE_NOT_FOUND          | Line id unknown for tenant
              | DEPOSIT_NOT_FOUND               | Deposit id unknown for tenant
--------------|---------------------------------|-----------------------------------
Concurrency   | CONCURRENT_MODIFICATION         | Version check failed inside apply/reverse
--------------|---------------------------------|-----------------------------------
Immutability  | MATCH_IMMUTABLE                 | Editing/deleting an append-only match row
              | INVALID_MATCH_TRANSITION        | Anything other than Applied -> Reversed
--------------|---------------------------------|-----------------------------------
Deposit       | DEPOSIT_FINALIZATION_BLOCKED    | Finalize with open lines / twice

===============================================================================
HANDLING PATTERNS
===============================================================================

User-correctable problems (incompatible selections, unsupported policies,
over-allocation requests) are normally RETURNED as ValidationError values
inside result DTOs.  The classes below exist for the cases where the
problem is discovered inside a transaction and the only safe response is
to abort it:

    try:
        executor.apply(plan, actor_id=actor_id)
    except ConservationViolationError as e:
        # Invariant failure: the SAVEPOINT has been rolled back.
        report(e.code, e.axis, e.expected, e.actual)
    except ConcurrentModificationError:
        # Nothing persisted, safe to retry.
        ...

ConcurrentModificationError is the only error the retry helper retries.
"""

from decimal import Decimal


class ReconKernelError(Exception):
    """Base exception for all reconciliation engine errors."""

    code: str = "RECON_KERNEL_ERROR"


# Selection-related exceptions


class SelectionError(ReconKernelError):
    """Base exception for selection problems."""

    code: str = "SELECTION_ERROR"


class SelectionIncompatibleError(SelectionError):
    """Claimed cardinality type does not fit the selected line/schedule counts."""

    code: str = "SELECTION_INCOMPATIBLE"

    def __init__(self, cardinality_type: str, line_count: int, schedule_count: int):
        self.cardinality_type = cardinality_type
        self.line_count = line_count
        self.schedule_count = schedule_count
        super().__init__(
            f"{cardinality_type} is not compatible with {line_count} line(s) "
            f"and {schedule_count} schedule(s)"
        )


class LineLockedError(SelectionError):
    """Deposit line is reconciled (its deposit was finalized)."""

    code: str = "LINE_LOCKED"

    def __init__(self, line_id: str):
        self.line_id = line_id
        super().__init__(f"Deposit line {line_id} is locked by a finalized deposit")


# Allocation-related exceptions


class AllocationError(ReconKernelError):
    """Base exception for allocation problems."""

    code: str = "ALLOCATION_ERROR"


class AllocationPolicyUnsupportedError(AllocationError):
    """No automatic allocation policy exists for the requested case."""

    code: str = "ALLOCATION_POLICY_UNSUPPORTED"

    def __init__(self, cardinality_type: str, guidance: str):
        self.cardinality_type = cardinality_type
        self.guidance = guidance
        super().__init__(f"{cardinality_type}: {guidance}")


class InvalidAmountError(AllocationError):
    """A monetary input is not finite or has the wrong sign."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, field: str, value: object):
        self.field = field
        self.value = value
        super().__init__(f"Invalid amount for {field}: {value!r}")


class ConservationViolationError(AllocationError):
    """
    Allocation totals do not match the amounts being allocated.

    This is an internal invariant failure, never a user error.  It is
    raised inside the apply transaction so nothing is persisted.
    """

    code: str = "CONSERVATION_VIOLATION"

    def __init__(
        self,
        axis: str,
        expected: Decimal,
        actual: Decimal,
        tolerance: Decimal,
        subject_id: str | None = None,
    ):
        self.axis = axis
        self.expected = expected
        self.actual = actual
        self.tolerance = tolerance
        self.subject_id = subject_id
        super().__init__(
            f"Conservation violated on {axis}: expected {expected}, "
            f"allocated {actual} (tolerance {tolerance})"
        )


class LineOverallocationError(ConservationViolationError):
    """Applying a plan would allocate more than a line's reported amount."""

    code: str = "LINE_OVERALLOCATED"

    def __init__(
        self,
        line_id: str,
        axis: str,
        line_total: Decimal,
        allocated: Decimal,
        tolerance: Decimal,
    ):
        self.line_id = line_id
        super().__init__(
            axis=axis,
            expected=line_total,
            actual=allocated,
            tolerance=tolerance,
            subject_id=line_id,
        )


# Lookup exceptions


class NotFoundError(ReconKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class RevenueScheduleNotFoundError(NotFoundError):
    """Revenue schedule does not exist (or is not visible to the tenant)."""

    code: str = "REVENUE_SCHEDULE_NOT_FOUND"

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Revenue schedule not found: {schedule_id}")


class DepositLineNotFoundError(NotFoundError):
    """Deposit line item does not exist."""

    code: str = "DEPOSIT_LINE_NOT_FOUND"

    def __init__(self, line_id: str):
        self.line_id = line_id
        super().__init__(f"Deposit line item not found: {line_id}")


class DepositNotFoundError(NotFoundError):
    """Deposit does not exist."""

    code: str = "DEPOSIT_NOT_FOUND"

    def __init__(self, deposit_id: str):
        self.deposit_id = deposit_id
        super().__init__(f"Deposit not found: {deposit_id}")


# Concurrency-related exceptions


class ConcurrencyError(ReconKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentModificationError(ConcurrencyError):
    """A row touched by apply/reverse was changed by another transaction."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        target = f"{entity_type} {entity_id}" if entity_id else entity_type
        super().__init__(
            f"Concurrent modification of {target}; nothing was applied, please retry"
        )


# Immutability-related exceptions


class MatchImmutabilityError(ReconKernelError):
    """Base exception for append-only match record violations."""

    code: str = "MATCH_IMMUTABILITY_ERROR"


class MatchImmutableError(MatchImmutabilityError):
    """Attempted to edit or delete an append-only match record."""

    code: str = "MATCH_IMMUTABLE"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{entity_type} {entity_id} is immutable: {reason}")


class InvalidMatchTransitionError(MatchImmutabilityError):
    """Match status may only move Applied -> Reversed."""

    code: str = "INVALID_MATCH_TRANSITION"

    def __init__(self, match_id: str, from_status: str, to_status: str):
        self.match_id = match_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Match {match_id} cannot move from {from_status} to {to_status}"
        )


# Deposit lifecycle exceptions


class DepositFinalizationError(ReconKernelError):
    """Deposit cannot be finalized or unfinalized in its current state."""

    code: str = "DEPOSIT_FINALIZATION_BLOCKED"

    def __init__(self, deposit_id: str, reason: str):
        self.deposit_id = deposit_id
        self.reason = reason
        super().__init__(f"Deposit {deposit_id}: {reason}")
