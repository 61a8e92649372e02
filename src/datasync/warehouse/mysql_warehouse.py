import logging
import os
import tempfile

import pymysql

from datasync.domain import LoadBatch
from datasync.errors import SyncError
from datasync.records import TSV_NULL, read_rows
from datasync.warehouse.base import DbApiSession, Warehouse, WarehouseSession

logger = logging.getLogger(__name__)


def tsv_cell(value: str | None) -> str:
    if value is None:
        return TSV_NULL
    return value.replace("\\", "\\\\").replace("\t", "\\t").replace("\n", "\\n").replace("\r", "\\r")


class MySqlSession(DbApiSession):
    """
    MySQL commits implicitly around DDL, so schema changes and bucket
    creation are not rolled back together with the rows of a failed load.
    """
    sqlglot_dialect = "mysql"
    current_schema_sql = "DATABASE()"
    text_type = "VARCHAR(255)"
    long_text_type = "TEXT"
    timestamp_type = "DATETIME"

    def create_table_like(self, table: str, template: str) -> None:
        self.execute(f"CREATE TABLE {self.quote(table)} LIKE {self.quote(template)}")
        logger.info("Created table %s like %s", table, template)

    def bulk_load(self, batch: LoadBatch, jsonpaths: tuple[str, ...]) -> None:
        if len(batch.local_paths) != len(batch.files):
            raise SyncError(f"Batch for {batch.table} is not staged locally")

        columns = self.describe_table(batch.table)
        if not columns:
            raise SyncError(f"Table {batch.table} does not exist")
        if jsonpaths:
            columns = columns[: len(jsonpaths)]

        fd, tsv_path = tempfile.mkstemp(prefix=f"{batch.table}-", suffix=".tsv")
        try:
            row_count = 0
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                for descriptor, local_path in zip(batch.files, batch.local_paths):
                    for row in read_rows(descriptor, local_path, jsonpaths, columns, true_text="1", false_text="0"):
                        f.write("\t".join(tsv_cell(v) for v in row))
                        f.write("\n")
                        row_count += 1

            target_columns = ", ".join(self.quote(c.name) for c in columns)
            self.execute(
                f"LOAD DATA LOCAL INFILE ? INTO TABLE {self.quote(batch.table)} CHARACTER SET utf8mb4 "
                f"FIELDS TERMINATED BY '\\t' ESCAPED BY '\\\\' LINES TERMINATED BY '\\n' ({target_columns})",
                [tsv_path],
            )
            logger.info("Loaded %d rows from %d files into %s", row_count, len(batch.files), batch.table)
        finally:
            os.remove(tsv_path)


class MySqlWarehouse(Warehouse):
    def __init__(
        self,
        *,
        host: str,
        port: int | None,
        database: str,
        user: str | None,
        password: str | None,
        timestamp_column: str,
    ):
        super().__init__(timestamp_column=timestamp_column)
        self.host = host
        self.port = port or 3306
        self.database = database
        self.user = user
        self.password = password

    def _open(self):
        return pymysql.connect(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password or "",
            charset="utf8mb4",
            autocommit=False,
            local_infile=True,
        )

    def _session(self, conn) -> WarehouseSession:
        return MySqlSession(conn, timestamp_column=self.timestamp_column)

    def _begin(self, conn) -> None:
        conn.begin()
