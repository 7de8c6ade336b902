from sqlalchemy import inspect

from reflective.core.migrations import init_db
from reflective.db import create_db_engine


def test_init_db_creates_tables_and_indexes():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    # Second run must not fail
    init_db(engine)

    inspector = inspect(engine)
    assert set(inspector.get_table_names()) == {"entries", "tags", "links", "queries", "query_results"}
    link_indexes = {index["name"] for index in inspector.get_indexes("links")}
    assert {"ix_links_entry_id", "ix_links_tag_id"} <= link_indexes
    engine.dispose()


def test_foreign_keys_are_enforced():
    engine = create_db_engine("sqlite://")
    with engine.connect() as conn:
        assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
    engine.dispose()
