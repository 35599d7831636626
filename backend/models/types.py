"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator


class ConfidenceScore(TypeDecorator):
    """A probability-like score in [0, 1], stored as NUMERIC(3, 2).

    Python code reads and writes ``float``; values are rounded half-up to two
    decimals at the DB boundary so comparisons against thresholds behave the
    same on SQLite and PostgreSQL.
    """

    impl = Numeric(3, 2, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        try:
            number = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid confidence score: {value!r}") from exc
        if number < 0 or number > 1:
            raise ValueError(f"Confidence score out of range [0, 1]: {value!r}")
        return number.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)
