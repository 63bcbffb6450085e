"""Database layer - engine, base classes, column types, immutability."""

from recon_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from recon_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    session_scope,
)
from recon_kernel.db.types import to_decimal

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "to_decimal",
]
