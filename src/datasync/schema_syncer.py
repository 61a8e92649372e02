import logging
import re

from datasync.artifacts import write_mapping
from datasync.ledger_store import ColumnMappingStore, DdlLedger
from datasync.object_store import ObjectStore, as_prefix
from datasync.partition_manager import PartitionManager
from datasync.warehouse.base import WarehouseSession

logger = logging.getLogger(__name__)

DDL_EXTENSION = ".ddl"
LINE_COMMENT = re.compile(r"//.*\n")

# ALTER TABLE [schema.]<table> ..., optionally double quoted; group 2 is the table
ALTER_TABLE = re.compile(
    r"\s*alter\s+table\s+(\"?[a-zA-Z0-9_$]*\"?\.)?\"?([a-zA-Z0-9_$]*)\"?\s+.*",
    re.IGNORECASE | re.DOTALL,
)


def split_statements(ddl: str) -> list[str]:
    """Strips // comments and splits on ';', dropping anything after the last one."""
    text = LINE_COMMENT.sub("", ddl + "\n")
    end = text.rfind(";")
    if end < 0:
        return []
    return [s for s in text[:end].split(";") if s.strip()]


class SchemaSyncer:
    """
    Applies DDL scripts authored upstream, once each, in key order.

    ALTER TABLE statements on a partitioned type are replayed against the
    canonical table and every existing bucket table, and the type's view is
    rebuilt so the new columns show through. Column-mapping artifacts are
    regenerated whenever something was applied.
    """

    def __init__(
        self,
        *,
        store: ObjectStore,
        ddl_dir: str,
        mappings_dir: str,
        partitions: PartitionManager,
        ddl_ledger: DdlLedger,
        column_mappings: ColumnMappingStore,
    ):
        self._store = store
        self._ddl_dir = as_prefix(ddl_dir)
        self._mappings_dir = mappings_dir
        self._partitions = partitions
        self._ddl_ledger = ddl_ledger
        self._column_mappings = column_mappings

    def sync(self, session: WarehouseSession, force_regenerate_mappings: bool = False) -> bool:
        applied = self._ddl_ledger.applied_files(session)
        to_apply = [f for f in self.ddl_files() if f not in applied]

        if not to_apply:
            if force_regenerate_mappings:
                self.generate_mappings(session)
            return False

        logger.info("Found %d new DDL files to apply", len(to_apply))

        altered_types: set[str] = set()
        for filename in to_apply:
            altered_types |= self._apply_file(session, filename)

        for type_name in sorted(altered_types):
            logger.info("Altered type %s is partitioned, recreating its view", type_name)
            self._partitions.recreate_view(session, type_name)

        self.generate_mappings(session)
        logger.info("Done syncing DDL files")
        return True

    def ddl_files(self) -> list[str]:
        files = []
        for url in self._store.list(self._ddl_dir):
            key = url[len(self._ddl_dir):] if url.startswith(self._ddl_dir) else url
            if not key.endswith(DDL_EXTENSION):
                logger.warning("Skipping file without %s extension: %s", DDL_EXTENSION, url)
                continue
            files.append(key)
        return sorted(files)

    def _apply_file(self, session: WarehouseSession, filename: str) -> set[str]:
        logger.info("Applying DDL file %s", filename)
        ddl = self._store.read_text(self._ddl_dir + filename)

        statements = split_statements(ddl)
        if not statements:
            logger.warning("DDL file %s holds no ';' terminated statements", filename)

        altered_types: set[str] = set()
        for statement in statements:
            type_name = self.altered_partitioned_type(statement)
            for sql in self.expand_for_partitions(session, statement, type_name):
                logger.info("Execute: %s", sql.strip())
                session.execute(sql)
            if type_name is not None:
                altered_types.add(type_name)

        self._ddl_ledger.record(session, filename, ";".join(statements) + (";" if statements else ""))
        return altered_types

    def altered_partitioned_type(self, sql: str) -> str | None:
        match = ALTER_TABLE.fullmatch(sql)
        if not match:
            return None
        type_name = match.group(2)
        return type_name if self._partitions.is_partitioned(type_name) else None

    def expand_for_partitions(self, session: WarehouseSession, sql: str, type_name: str | None = None) -> list[str]:
        if type_name is None:
            return [sql]

        match = ALTER_TABLE.fullmatch(sql)
        start, end = match.span(2)

        targets = [self._partitions.canonical_table(type_name)]
        targets += self._partitions.tables(session, type_name)
        return [f"{sql[:start]}{table}{sql[end:]}" for table in targets]

    def generate_mappings(self, session: WarehouseSession) -> list[str]:
        urls = []
        for table in self._column_mappings.tables(session):
            mapping = self._column_mappings.mapping(session, table)
            urls.append(write_mapping(self._store, self._mappings_dir, mapping))
        logger.info("Regenerated %d column mapping files", len(urls))
        return urls
