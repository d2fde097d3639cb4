"""Column types and time helpers shared by every ledger model."""

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Enum, Numeric, String
from sqlalchemy.types import TypeDecorator


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class AtomicAmount(TypeDecorator):
    """Integer token amount in the token's smallest unit.

    NUMERIC(78, 0) holds any uint256 exactly on PostgreSQL.  SQLite has no
    exact type that wide (its NUMERIC binds through float), so there the
    value is stored as decimal text and all arithmetic and sums happen in
    Python.  Python always sees ``int``.
    """

    impl = Numeric(78, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(80))
        return dialect.type_descriptor(Numeric(78, 0))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return str(int(value))
        return Decimal(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


def enum_type(enum_cls: type[enum.Enum], length: int = 20) -> Enum:
    """Store a str-valued enum as its value in a plain VARCHAR."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
