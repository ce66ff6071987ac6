"""Helpers shared by the store modules."""

from datetime import UTC, datetime

from sqlalchemy.dialects import postgresql, sqlite


def _strip_tz(dt: datetime | None) -> datetime | None:
    """Drop tzinfo after converting to UTC. Columns are TIMESTAMP WITHOUT TIME ZONE."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(UTC).replace(tzinfo=None)
    return dt


def dialect_insert(dialect_name: str, table):
    """Return an INSERT construct that supports ON CONFLICT for the dialect."""
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)
