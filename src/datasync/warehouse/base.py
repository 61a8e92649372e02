"""
Warehouse connections and the session handed to every repository call.

SQL is written with '?' placeholders; dialects whose driver expects a
different paramstyle translate it in `_translate`. Identifiers are quoted
per dialect with sqlglot.
"""
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlglot import exp

from core.settings import TABLE_COLUMN_MAPPING, TABLE_DDL_LOG, TABLE_IMPORT_LOG
from datasync.datehour import ONE_HOUR
from datasync.domain import ColumnDetail, LoadBatch

logger = logging.getLogger(__name__)

LIKE_ESCAPE = "!"


def escape_like(value: str) -> str:
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", f"{LIKE_ESCAPE}%")
        .replace("_", f"{LIKE_ESCAPE}_")
    )


class WarehouseSession(ABC):
    """One connection inside one transaction."""

    sqlglot_dialect: str = ""
    current_schema_sql: str = "current_schema()"
    text_type: str = "VARCHAR"
    long_text_type: str = "VARCHAR"
    timestamp_type: str = "TIMESTAMP"
    drop_table_suffix: str = ""

    def __init__(self, conn, *, timestamp_column: str):
        self.conn = conn
        self.timestamp_column = timestamp_column

    # ----------------------------
    # Statement execution
    # ----------------------------
    @abstractmethod
    def execute(self, sql: str, params: Sequence[Any] | None = None) -> None:
        ...

    @abstractmethod
    def execute_update(self, sql: str, params: Sequence[Any] | None = None) -> int:
        """Runs a DML statement and returns the affected row count."""

    @abstractmethod
    def fetchall(self, sql: str, params: Sequence[Any] | None = None) -> list[tuple]:
        ...

    @abstractmethod
    def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        ...

    @abstractmethod
    def bulk_load(self, batch: LoadBatch, jsonpaths: tuple[str, ...]) -> None:
        """Copies every file of the batch into batch.table."""

    def quote(self, identifier: str) -> str:
        return exp.to_identifier(identifier, quoted=True).sql(dialect=self.sqlglot_dialect)

    # ----------------------------
    # Metadata
    # ----------------------------
    def list_tables_with_prefix(self, prefix: str) -> list[str]:
        rows = self.fetchall(
            f"""
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = {self.current_schema_sql}
              AND table_type = 'BASE TABLE'
              AND table_name LIKE ? ESCAPE '{LIKE_ESCAPE}'
            ORDER BY table_name
            """,
            [f"{escape_like(prefix)}%"],
        )
        return [r[0] for r in rows]

    def table_exists(self, table: str) -> bool:
        rows = self.fetchall(
            f"""
            SELECT 1
            FROM information_schema.tables
            WHERE table_schema = {self.current_schema_sql} AND table_name = ?
            """,
            [table],
        )
        return bool(rows)

    def describe_table(self, table: str) -> list[ColumnDetail]:
        rows = self.fetchall(
            f"""
            SELECT column_name, data_type, is_nullable
            FROM information_schema.columns
            WHERE table_schema = {self.current_schema_sql} AND table_name = ?
            ORDER BY ordinal_position
            """,
            [table],
        )
        return [ColumnDetail(name=r[0], data_type=str(r[1]), nullable=str(r[2]).upper() == "YES") for r in rows]

    def has_column(self, table: str, column: str) -> bool:
        return any(c.name.lower() == column.lower() for c in self.describe_table(table))

    def has_timestamp_column(self, table: str) -> bool:
        return self.has_column(table, self.timestamp_column)

    # ----------------------------
    # Table layout
    # ----------------------------
    @abstractmethod
    def create_table_like(self, table: str, template: str) -> None:
        ...

    def recreate_view(self, view: str, tables: Sequence[str]) -> None:
        if not tables:
            logger.warning("Not recreating view %s: no tables to union", view)
            return

        select = " UNION ALL ".join(f"SELECT * FROM {self.quote(t)}" for t in tables)
        for statement in self._view_statements(self.quote(view), select):
            self.execute(statement)
        logger.info("Recreated view %s over %s", view, list(tables))

    def _view_statements(self, quoted_view: str, select: str) -> list[str]:
        return [
            f"DROP VIEW IF EXISTS {quoted_view} CASCADE",
            f"CREATE VIEW {quoted_view} AS {select}",
        ]

    def drop_table(self, table: str) -> None:
        self.execute(f"DROP TABLE {self.quote(table)}{self.drop_table_suffix}")
        logger.info("Dropped table %s", table)

    # ----------------------------
    # Row deletion
    # ----------------------------
    def delete_all(self, table: str) -> int:
        return self.execute_update(f"DELETE FROM {self.quote(table)}")

    def delete_by_time_range(self, table: str, start: datetime, end: datetime) -> int:
        """Deletes rows with start <= timestamp < end + 1h."""
        column = self.quote(self.timestamp_column)
        return self.execute_update(
            f"DELETE FROM {self.quote(table)} WHERE {column} >= ? AND {column} < ?",
            [start, end + ONE_HOUR],
        )

    # ----------------------------
    # Bookkeeping tables
    # ----------------------------
    def bootstrap(self) -> None:
        self.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.quote(TABLE_IMPORT_LOG)} (
              filename   {self.text_type} NOT NULL,
              tablename  {self.text_type} NOT NULL,
              {self.quote('timestamp')} {self.timestamp_type} NOT NULL
            )
            """
        )
        self.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.quote(TABLE_DDL_LOG)} (
              filename   {self.text_type} NOT NULL,
              sql_text   {self.long_text_type} NOT NULL,
              applied_at {self.timestamp_type} NOT NULL
            )
            """
        )
        self.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.quote(TABLE_COLUMN_MAPPING)} (
              id         INTEGER NOT NULL,
              tablename  {self.text_type} NOT NULL,
              jsonpath   {self.text_type} NOT NULL
            )
            """
        )


class DbApiSession(WarehouseSession):
    """Session over a DB-API driver using the 'format' paramstyle (%s)."""

    def _translate(self, sql: str, params: Sequence[Any] | None) -> str:
        if params is None:
            return sql
        return sql.replace("%", "%%").replace("?", "%s")

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> None:
        with self.conn.cursor() as cursor:
            cursor.execute(self._translate(sql, params), params)

    def execute_update(self, sql: str, params: Sequence[Any] | None = None) -> int:
        with self.conn.cursor() as cursor:
            cursor.execute(self._translate(sql, params), params)
            return cursor.rowcount

    def fetchall(self, sql: str, params: Sequence[Any] | None = None) -> list[tuple]:
        with self.conn.cursor() as cursor:
            cursor.execute(self._translate(sql, params), params)
            return list(cursor.fetchall())

    def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        if not rows:
            return
        with self.conn.cursor() as cursor:
            cursor.executemany(self._translate(sql, rows[0]), rows)


class Warehouse(ABC):
    """
    Owns the connection to the target warehouse.

    Use as a context manager; `transaction()` yields the session every
    repository call runs on and commits on exit (rolls back on error).
    """

    # Whether bulk loads read the object store directly (COPY) or need the
    # files staged locally first.
    copies_from_object_store: bool = False

    def __init__(self, *, timestamp_column: str):
        self.timestamp_column = timestamp_column
        self._connection = None

    def __enter__(self) -> "Warehouse":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        self.close()

    def connect(self) -> None:
        if self._connection is not None:
            raise RuntimeError("Warehouse connection already open")
        self._connection = self._open()
        logger.debug("Connected to %s", type(self).__name__)

    def close(self) -> None:
        if self._connection is None:
            return
        try:
            self._connection.close()
        finally:
            self._connection = None

    def _require_connection(self):
        if self._connection is None:
            raise RuntimeError("Warehouse is not connected; use it as a context manager")
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[WarehouseSession]:
        conn = self._require_connection()
        self._begin(conn)
        try:
            yield self._session(conn)
        except BaseException:
            self._rollback(conn)
            raise
        else:
            self._commit(conn)

    def bootstrap(self) -> None:
        with self.transaction() as session:
            session.bootstrap()
        logger.info("Bookkeeping tables in place")

    @abstractmethod
    def _open(self):
        ...

    @abstractmethod
    def _session(self, conn) -> WarehouseSession:
        ...

    def _begin(self, conn) -> None:
        pass

    def _commit(self, conn) -> None:
        conn.commit()

    def _rollback(self, conn) -> None:
        try:
            conn.rollback()
        except Exception:
            logger.exception("Rollback failed")
