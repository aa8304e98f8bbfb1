"""
Database Compatibility Utilities

SQLite/PostgreSQL compatibility for JSON types
"""

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB


# JSONB on PostgreSQL, plain JSON on SQLite (tests)
JSONB = JSON().with_variant(PG_JSONB(), "postgresql")
