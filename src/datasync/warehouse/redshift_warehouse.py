import logging

import psycopg2

from datasync.domain import LoadBatch
from datasync.errors import ConfigurationError, SyncError
from datasync.warehouse.base import DbApiSession, Warehouse, WarehouseSession

logger = logging.getLogger(__name__)


def sql_quote(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


class RedshiftSession(DbApiSession):
    sqlglot_dialect = "redshift"
    text_type = "VARCHAR(1024)"
    long_text_type = "VARCHAR(65535)"
    drop_table_suffix = " CASCADE"

    def __init__(self, conn, *, timestamp_column: str, credentials_clause: str):
        super().__init__(conn, timestamp_column=timestamp_column)
        self.credentials_clause = credentials_clause

    def create_table_like(self, table: str, template: str) -> None:
        # Inherits encoding, distkey, sortkey and not-null, not keys
        self.execute(f"CREATE TABLE {self.quote(table)} (LIKE {self.quote(template)})")
        logger.info("Created table %s like %s", table, template)

    def copy_statement(self, batch: LoadBatch) -> str:
        first = batch.files[0]
        if first.is_avro:
            file_format = "AVRO"
        elif first.is_json:
            file_format = "JSON"
        else:
            raise SyncError(f"Redshift COPY supports avro and json files, not '{first.ext}': {first.url}")

        lines = [
            f"COPY {self.quote(batch.table)}",
            f"FROM {sql_quote(batch.manifest_url)}",
            self.credentials_clause,
            f"FORMAT AS {file_format} {sql_quote(batch.mapping_url)}",
        ]
        if first.is_gzip:
            lines.append("GZIP")
        lines += [
            "TIMEFORMAT AS 'epochmillisecs'",
            "MANIFEST",
            "ACCEPTINVCHARS",
            "ROUNDEC",
            "MAXERROR 0",
            "TRUNCATECOLUMNS",
        ]
        return "\n".join(lines)

    def bulk_load(self, batch: LoadBatch, jsonpaths: tuple[str, ...]) -> None:
        statement = self.copy_statement(batch)
        try:
            self.execute(statement)
        except psycopg2.Error as e:
            raise SyncError(
                f"Failed to COPY into {batch.table} (manifest: {batch.manifest_url}, mappings: {batch.mapping_url}): {e}"
            ) from e
        logger.info("COPY of %d files into %s done", len(batch.files), batch.table)


class RedshiftWarehouse(Warehouse):
    copies_from_object_store = True

    def __init__(
        self,
        *,
        host: str,
        port: int | None,
        database: str,
        user: str | None,
        password: str | None,
        schema_name: str | None,
        timestamp_column: str,
        iam_role: str | None = None,
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
    ):
        super().__init__(timestamp_column=timestamp_column)
        self.host = host
        self.port = port or 5439
        self.database = database
        self.user = user
        self.password = password
        self.schema_name = schema_name

        if iam_role:
            self.credentials_clause = f"IAM_ROLE {sql_quote(iam_role)}"
        elif aws_access_key_id and aws_secret_access_key:
            self.credentials_clause = (
                "WITH CREDENTIALS "
                + sql_quote(f"aws_access_key_id={aws_access_key_id};aws_secret_access_key={aws_secret_access_key}")
            )
        else:
            raise ConfigurationError("Redshift COPY needs either iam_role or an aws access key pair")

    def _open(self):
        conn = psycopg2.connect(
            host=self.host,
            port=self.port,
            dbname=self.database,
            user=self.user,
            password=self.password,
        )
        conn.autocommit = False
        if self.schema_name:
            with conn.cursor() as cursor:
                cursor.execute(f"SET search_path TO {self.schema_name}")
            conn.commit()
        return conn

    def _session(self, conn) -> WarehouseSession:
        return RedshiftSession(conn, timestamp_column=self.timestamp_column, credentials_clause=self.credentials_clause)
