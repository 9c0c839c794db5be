"""Database helper utilities for ensuring schema consistency."""
from __future__ import annotations

from typing import Iterable, Set

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db


def _get_column_names(table_name: str) -> Set[str]:
    inspector = inspect(db.engine)
    return {column["name"] for column in inspector.get_columns(table_name)}


def ensure_database_schema() -> None:
    """Ensure that essential schema updates are applied.

    Runs on every application start. Missing tables are created and the
    ``stories`` table receives the columns that were added after the first
    release (mind map storage and the character count).
    """

    try:
        inspector = inspect(db.engine)
        table_names: Iterable[str] = inspector.get_table_names()

        if "stories" not in table_names:
            db.create_all()
            inspector = inspect(db.engine)
            table_names = inspector.get_table_names()

        # Import locally to avoid circular import issues during application setup.
        from .models import Chapter, ChatTranscript

        required_tables = {
            "chapters": Chapter.__table__,
            "chat_transcripts": ChatTranscript.__table__,
        }

        for table_name, table in required_tables.items():
            if table_name not in table_names:
                table.create(bind=db.engine)

        if "stories" in table_names:
            story_columns = _get_column_names("stories")
            alter_statements = []

            if "mind_map_data" not in story_columns:
                alter_statements.append("ALTER TABLE stories ADD COLUMN mind_map_data TEXT")

            if "num_characters" not in story_columns:
                alter_statements.append(
                    "ALTER TABLE stories ADD COLUMN num_characters INTEGER DEFAULT 3"
                )

            for statement in alter_statements:
                with db.engine.begin() as connection:
                    connection.execute(text(statement))
    except SQLAlchemyError:
        # Re-raise so the application does not continue in a partially configured state.
        raise
