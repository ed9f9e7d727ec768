"""Dialect-aware INSERT ... ON CONFLICT constructs.

PostgreSQL is the production backend; SQLite backs the test suite. Both dialects
expose ``on_conflict_do_update`` / ``on_conflict_do_nothing`` and ``RETURNING``,
so callers build one statement and let the bound dialect pick the construct.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

# JSONB on PostgreSQL, generic JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def conflict_insert(db: Session, model: type) -> Any:
    """Return a dialect-specific ``insert(model)`` supporting ON CONFLICT clauses.

    Raises:
        NotImplementedError: If the bound dialect has no ON CONFLICT support.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT inserts not supported for dialect: {dialect}")
