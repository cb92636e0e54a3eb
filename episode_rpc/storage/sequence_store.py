"""Durable named counters.

The only way a counter moves is ``increment``: one transaction that creates the
row if needed and bumps it with ``UPDATE ... RETURNING``.  A failed
transaction rolls back, so a caller that sees an error reserved nothing.
"""
import logging
from typing import Any, Dict, List, Optional

from episode_rpc.config import get_settings
from episode_rpc.errors import InvalidInitialValue, ResourceNotFound
from episode_rpc.models import FormatOptions
from .database import Database, from_storage_ts, to_storage_ts, utcnow


logger = logging.getLogger(__name__)


def _check_initial_value(value: int) -> None:
    # check digits are undefined for negative values
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidInitialValue(f"initial_value must be a non-negative integer, got {value!r}")


class SequenceStore:
    """Counters keyed by sequence name, persisted in DuckDB."""

    def __init__(self, database: Optional[Database] = None, initial_value: Optional[int] = None):
        self.db = database or Database(get_settings().database_path)
        self.initial_value = (
            get_settings().sequence_initial_value if initial_value is None else initial_value
        )
        _check_initial_value(self.initial_value)
        self._initialize_schema()
        logger.info("SequenceStore initialised")

    def _initialize_schema(self):
        with self.db.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sequences (
                    name VARCHAR PRIMARY KEY,
                    current_value BIGINT NOT NULL,
                    format_options JSON,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

    # ------------------------------------------------------------------
    # Atomic increment (the only mutation of current_value)
    # ------------------------------------------------------------------

    def increment(self, name: str, count: int) -> int:
        """Reserve ``count`` values and return the new current value.

        The reserved range is ``(new - count, new]``.
        """
        now = to_storage_ts(utcnow())
        with self.db.transaction() as conn:
            conn.execute("""
                INSERT INTO sequences (name, current_value, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (name) DO NOTHING
            """, [name, self.initial_value, now, now])
            new_value = conn.execute("""
                UPDATE sequences SET current_value = current_value + ?, updated_at = ?
                WHERE name = ?
                RETURNING current_value
            """, [count, now, name]).fetchone()[0]
        logger.debug("sequence_incremented", extra={"sequence_name": name, "count": count, "value": new_value})
        return new_value

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_sequence(
        self,
        name: str,
        initial_value: Optional[int] = None,
        format_options: Optional[FormatOptions] = None,
    ) -> bool:
        """Create a counter if absent.  Returns False when it already existed."""
        now = to_storage_ts(utcnow())
        start = self.initial_value if initial_value is None else initial_value
        _check_initial_value(start)
        with self.db.transaction() as conn:
            created = conn.execute("SELECT 1 FROM sequences WHERE name = ?", [name]).fetchone() is None
            if created:
                conn.execute("""
                    INSERT INTO sequences (name, current_value, format_options, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, [
                    name, start,
                    format_options.model_dump_json() if format_options else None,
                    now, now,
                ])
        logger.info("sequence_created" if created else "sequence_exists", extra={
            "sequence_name": name, "initial_value": start,
        })
        return bool(created)

    def current_value(self, name: str) -> int:
        row = self.db.fetchone("SELECT current_value FROM sequences WHERE name = ?", [name])
        if row is None:
            raise ResourceNotFound(f"Sequence {name} not found")
        return row[0]

    def get_format_options(self, name: str) -> Optional[FormatOptions]:
        row = self.db.fetchone("SELECT format_options FROM sequences WHERE name = ?", [name])
        if row is None or row[0] is None:
            return None
        return FormatOptions.model_validate_json(row[0])

    def list_sequences(self) -> List[Dict[str, Any]]:
        rows = self.db.fetchall(
            "SELECT name, current_value, format_options, updated_at FROM sequences ORDER BY name"
        )
        return [
            {
                "name": name,
                "current_value": value,
                "format_options": FormatOptions.model_validate_json(options) if options else None,
                "updated_at": from_storage_ts(updated_at),
            }
            for name, value, options, updated_at in rows
        ]

    def close(self):
        self.db.close()
