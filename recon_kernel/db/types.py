"""
Module: recon_kernel.db.types
Responsibility: The sanctioned money coercion shared by models, engines and
    services.
Architecture position: Kernel > DB.  MUST NOT import from models/, domain/
    or services/.

Invariants enforced:
    - No floats.  Every amount is a Decimal with explicit precision.
    - Non-finite values never leave to_decimal().
"""

from decimal import Decimal, InvalidOperation


def to_decimal(value: object | None) -> Decimal | None:
    """
    Coerce a loosely typed amount into a finite Decimal.

    Returns None for None and for values that are not finite numbers
    (NaN, Infinity, garbage strings).  Floats go through ``str`` so that
    0.1 becomes Decimal("0.1") and not its binary expansion.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None
    if not result.is_finite():
        return None
    return result
