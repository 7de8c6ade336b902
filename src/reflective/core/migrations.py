from sqlalchemy import text
from sqlalchemy.engine import Engine

from reflective.db import Base
from reflective.core import models  # Import models to register them with Base


def init_db(engine: Engine) -> None:
    """Initializes the database schema."""
    Base.metadata.create_all(bind=engine)

    # Apply additional indexes not covered by the ORM
    apply_cache_indexes(engine)


def apply_cache_indexes(engine: Engine) -> None:
    """
    Secondary indexes for the lookups the cache performs on load and search.

    All operations are idempotent (safe to run multiple times).
    """
    with engine.begin() as conn:
        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS ix_links_entry_id
            ON links(entry_id)
        """))

        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS ix_links_tag_id
            ON links(tag_id)
        """))

        # Tag names are matched case-insensitively
        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS ix_tags_name_lower
            ON tags(lower(name))
        """))

        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS ix_query_results_query_id
            ON query_results(query_id, rank)
        """))

        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS ix_entries_created_at
            ON entries(created_at DESC)
        """))
