"""Database-agnostic type definitions for SQLAlchemy models.

Works with both SQLite (local runs and tests) and PostgreSQL.
"""
from datetime import datetime, timezone

from sqlalchemy import JSON, Uuid

# JSON rather than JSONB so the same models create on SQLite
JSONType = JSON

# Stored natively on PostgreSQL, as CHAR(32) on SQLite
UUIDType = Uuid


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp for column defaults."""
    return datetime.now(timezone.utc)
