"""Column types shared by the models."""

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator


class Uint256(TypeDecorator):
    """Unsigned 256-bit token amount stored as a base-10 string.

    Wei-denominated amounts overflow BIGINT and lose precision in floating
    NUMERIC affinity, so they round-trip through text instead.
    """

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value: int | None, dialect) -> str | None:  # type: ignore[no-untyped-def]
        if value is None:
            return None
        value = int(value)
        if value < 0:
            raise ValueError("Token amounts cannot be negative")
        return str(value)

    def process_result_value(self, value: str | None, dialect) -> int | None:  # type: ignore[no-untyped-def]
        if value is None:
            return None
        return int(value)
