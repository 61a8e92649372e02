import logging
import uuid
from collections.abc import Sequence
from typing import Any

import duckdb
import pyarrow as pa

from datasync.domain import LoadBatch
from datasync.errors import SyncError
from datasync.records import read_rows
from datasync.warehouse.base import Warehouse, WarehouseSession

logger = logging.getLogger(__name__)


class DuckDbSession(WarehouseSession):
    sqlglot_dialect = "duckdb"

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> None:
        self.conn.execute(sql, params)

    def execute_update(self, sql: str, params: Sequence[Any] | None = None) -> int:
        # DuckDB reports the affected row count as the statement's result
        row = self.conn.execute(sql, params).fetchone()
        return int(row[0]) if row else 0

    def fetchall(self, sql: str, params: Sequence[Any] | None = None) -> list[tuple]:
        return self.conn.execute(sql, params).fetchall()

    def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        if rows:
            self.conn.executemany(sql, rows)

    def create_table_like(self, table: str, template: str) -> None:
        self.execute(f"CREATE TABLE {self.quote(table)} AS SELECT * FROM {self.quote(template)} LIMIT 0")
        logger.info("Created table %s like %s", table, template)

    def _view_statements(self, quoted_view: str, select: str) -> list[str]:
        return [f"CREATE OR REPLACE VIEW {quoted_view} AS {select}"]

    def bulk_load(self, batch: LoadBatch, jsonpaths: tuple[str, ...]) -> None:
        if len(batch.local_paths) != len(batch.files):
            raise SyncError(f"Batch for {batch.table} is not staged locally")

        columns = self.describe_table(batch.table)
        if not columns:
            raise SyncError(f"Table {batch.table} does not exist")
        if jsonpaths:
            columns = columns[: len(jsonpaths)]

        rows: list[list[str | None]] = []
        for descriptor, local_path in zip(batch.files, batch.local_paths):
            rows.extend(read_rows(descriptor, local_path, jsonpaths, columns))

        if not rows:
            logger.info("No rows in %d files for %s", len(batch.files), batch.table)
            return

        staged = pa.table({
            f"c{i}": pa.array([row[i] for row in rows], type=pa.string())
            for i in range(len(columns))
        })

        view_name = f"staged_{uuid.uuid4().hex}"
        target_columns = ", ".join(self.quote(c.name) for c in columns)
        casts = ", ".join(f"CAST(c{i} AS {c.data_type})" for i, c in enumerate(columns))

        self.conn.register(view_name, staged)
        try:
            self.execute(f"INSERT INTO {self.quote(batch.table)} ({target_columns}) SELECT {casts} FROM {view_name}")
        finally:
            self.conn.unregister(view_name)

        logger.info("Inserted %d rows from %d files into %s", len(rows), len(batch.files), batch.table)


class DuckDbWarehouse(Warehouse):
    """Embedded warehouse, file backed or in memory."""

    def __init__(self, *, database: str = ":memory:", timestamp_column: str):
        super().__init__(timestamp_column=timestamp_column)
        self.database = database

    def _open(self) -> duckdb.DuckDBPyConnection:
        return duckdb.connect(self.database)

    def _session(self, conn) -> WarehouseSession:
        return DuckDbSession(conn, timestamp_column=self.timestamp_column)

    def _begin(self, conn) -> None:
        conn.execute("BEGIN TRANSACTION")

    def _commit(self, conn) -> None:
        conn.execute("COMMIT")

    def _rollback(self, conn) -> None:
        try:
            conn.execute("ROLLBACK")
        except duckdb.Error:
            logger.exception("Rollback failed")
