"""
Bookkeeping tables living in the target warehouse.

Every method runs on the caller's session so ledger writes commit or roll
back together with the data they describe.
"""
import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from core.settings import PARTITION_TABLE_INFIX, TABLE_COLUMN_MAPPING, TABLE_DDL_LOG, TABLE_IMPORT_LOG
from datasync.datehour import ONE_HOUR, format_date_hour
from datasync.domain import ColumnMapping, DdlLedgerEntry, FileDescriptor, ImportLedgerEntry
from datasync.warehouse.base import LIKE_ESCAPE, WarehouseSession, escape_like

logger = logging.getLogger(__name__)


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ImportLedger:
    """
    Which object-store files have been applied to which table.

    An entry belongs to a type when its tablename is the type itself or one
    of the type's bucket tables.
    """

    def find(self, session: WarehouseSession, type_name: str, start: datetime, end: datetime) -> list[str]:
        where, params = self._type_filter(session, type_name)
        ts = session.quote("timestamp")
        rows = session.fetchall(
            f"""
            SELECT filename
            FROM {session.quote(TABLE_IMPORT_LOG)}
            WHERE {where} AND {ts} >= ? AND {ts} < ?
            """,
            params + [start, end + ONE_HOUR],
        )
        return [r[0] for r in rows]

    def record(self, session: WarehouseSession, files: Sequence[FileDescriptor], table: str) -> None:
        entries = [ImportLedgerEntry(filename=f.url, tablename=table, timestamp=f.timestamp) for f in files]
        if not entries:
            return

        session.executemany(
            f"""
            INSERT INTO {session.quote(TABLE_IMPORT_LOG)} (filename, tablename, {session.quote('timestamp')})
            VALUES (?, ?, ?)
            """,
            [(e.filename, e.tablename, e.timestamp) for e in entries],
        )
        logger.debug("Recorded %d imported files for %s", len(entries), table)

    def delete_by_time_range(self, session: WarehouseSession, type_name: str, start: datetime, end: datetime) -> int:
        where, params = self._type_filter(session, type_name)
        ts = session.quote("timestamp")
        deleted = session.execute_update(
            f"""
            DELETE FROM {session.quote(TABLE_IMPORT_LOG)}
            WHERE {where} AND {ts} >= ? AND {ts} < ?
            """,
            params + [start, end + ONE_HOUR],
        )
        logger.info(
            "Removed %d import log entries for %s in %s - %s",
            deleted, type_name, format_date_hour(start), format_date_hour(end),
        )
        return deleted

    def delete_all_by_type(self, session: WarehouseSession, type_name: str) -> int:
        where, params = self._type_filter(session, type_name)
        deleted = session.execute_update(f"DELETE FROM {session.quote(TABLE_IMPORT_LOG)} WHERE {where}", params)
        logger.info("Removed all %d import log entries for %s", deleted, type_name)
        return deleted

    @staticmethod
    def _type_filter(session: WarehouseSession, type_name: str) -> tuple[str, list]:
        pattern = f"{escape_like(type_name + PARTITION_TABLE_INFIX)}%"
        return f"(tablename = ? OR tablename LIKE ? ESCAPE '{LIKE_ESCAPE}')", [type_name, pattern]


class DdlLedger:
    """Append-only log of applied DDL files."""

    def applied_files(self, session: WarehouseSession) -> set[str]:
        rows = session.fetchall(f"SELECT filename FROM {session.quote(TABLE_DDL_LOG)}")
        return {r[0] for r in rows}

    def record(self, session: WarehouseSession, filename: str, sql_text: str) -> DdlLedgerEntry:
        entry = DdlLedgerEntry(filename=filename, sql_text=sql_text, applied_at=utc_now_naive())
        session.execute(
            f"INSERT INTO {session.quote(TABLE_DDL_LOG)} (filename, sql_text, applied_at) VALUES (?, ?, ?)",
            [entry.filename, entry.sql_text, entry.applied_at],
        )
        return entry


class ColumnMappingStore:
    """
    Json paths feeding each table's columns, maintained by the DDL scripts.

    The tables listed here are the types the sync engine works with.
    """

    def tables(self, session: WarehouseSession) -> list[str]:
        rows = session.fetchall(
            f"SELECT DISTINCT tablename FROM {session.quote(TABLE_COLUMN_MAPPING)} ORDER BY tablename"
        )
        return [r[0] for r in rows]

    def mapping(self, session: WarehouseSession, table: str) -> ColumnMapping:
        rows = session.fetchall(
            f"SELECT jsonpath FROM {session.quote(TABLE_COLUMN_MAPPING)} WHERE tablename = ? ORDER BY id",
            [table],
        )
        return ColumnMapping(table=table, jsonpaths=tuple(r[0] for r in rows))
