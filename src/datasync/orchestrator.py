from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from core.settings import (
    DEFAULT_LEDGER_CLEANUP_INTERVAL_HOURS,
    LEDGER_EPOCH,
    SCRATCH_MANIFESTS_DIRNAME,
    SCRATCH_MAPPINGS_DIRNAME,
)
from datasync.alerting import Alerter, create_alerter
from datasync.artifacts import mapping_url, read_mapping, write_manifest
from datasync.datehour import ONE_HOUR, Chunking, TimeChunk, format_date_hour, parse_date_hour, utc_now
from datasync.domain import FileDescriptor, LoadBatch, LoadPhase
from datasync.errors import DataFileError, UnknownTypeError
from datasync.file_catalog import FileCatalog
from datasync.ledger_store import ColumnMappingStore, DdlLedger, ImportLedger
from datasync.object_store import ObjectStore, create_object_store, join_url
from datasync.partition_manager import PartitionManager
from datasync.retry import RetryPolicy, retry_or_raise
from datasync.schema_syncer import SchemaSyncer
from datasync.sync_config import SyncConfig
from datasync.warehouse.base import Warehouse, WarehouseSession
from datasync.warehouse.factory import create_warehouse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrchestrationConfig:
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    ledger_cleanup_interval: timedelta = timedelta(hours=DEFAULT_LEDGER_CLEANUP_INTERVAL_HOURS)
    snapshot_types: frozenset[str] = frozenset()


class LoadOrchestrator:
    """
    Coordinates: sync schema -> partition tables -> clean ledger -> load chunks.

    Each (chunk, type) unit is loaded in its own transaction together with
    its import-ledger rows, so a failed unit leaves nothing behind and a
    rerun picks up exactly the files not yet recorded.

    Use as a context manager: entering connects and initializes, leaving
    removes this process's scratch area and disconnects.
    """

    def __init__(
        self,
        *,
        warehouse: Warehouse,
        store: ObjectStore,
        catalog: FileCatalog,
        partitions: PartitionManager,
        import_ledger: ImportLedger,
        ddl_ledger: DdlLedger,
        column_mappings: ColumnMappingStore,
        alerter: Alerter,
        ddl_dir: str,
        tmp_dir: str,
        config: OrchestrationConfig,
        requested_types: Sequence[str] | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.warehouse = warehouse
        self.store = store
        self.catalog = catalog
        self.partitions = partitions
        self.import_ledger = import_ledger
        self.column_mappings = column_mappings
        self.alerter = alerter
        self.config = config
        self.requested_types = list(requested_types) if requested_types else None
        self.clock = clock
        self.sleep = sleep

        # Per-process scratch area, removed on close()
        self.scratch_url = join_url(tmp_dir, uuid.uuid4().hex)
        self.manifests_dir = join_url(self.scratch_url, SCRATCH_MANIFESTS_DIRNAME)
        self.mappings_dir = join_url(self.scratch_url, SCRATCH_MAPPINGS_DIRNAME)

        self.schema_syncer = SchemaSyncer(
            store=store,
            ddl_dir=ddl_dir,
            mappings_dir=self.mappings_dir,
            partitions=partitions,
            ddl_ledger=ddl_ledger,
            column_mappings=column_mappings,
        )

        self.types: list[str] = []
        self.phase = LoadPhase.DONE
        self._last_ledger_cleanup = clock()

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        *,
        requested_types: Sequence[str] | None = None,
        warehouse: Warehouse | None = None,
        store: ObjectStore | None = None,
        alerter: Alerter | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> LoadOrchestrator:
        store = store or create_object_store(config.object_store)
        partitions = PartitionManager(config.partitionings, clock=clock)
        return cls(
            warehouse=warehouse or create_warehouse(config.warehouse),
            store=store,
            catalog=FileCatalog(
                store,
                config.object_store.root_dir,
                max_workers=config.listing_max_workers,
            ),
            partitions=partitions,
            import_ledger=ImportLedger(),
            ddl_ledger=DdlLedger(),
            column_mappings=ColumnMappingStore(),
            alerter=alerter or create_alerter(config.alerting),
            ddl_dir=config.object_store.ddl_dir,
            tmp_dir=config.object_store.tmp_dir,
            config=OrchestrationConfig(
                retry=RetryPolicy.from_spec(config.retry),
                ledger_cleanup_interval=timedelta(hours=config.ledger_cleanup_interval_hours),
                snapshot_types=frozenset(t for t in config.types if config.is_snapshot_type(t)),
            ),
            requested_types=requested_types,
            clock=clock,
            sleep=sleep,
        )

    def __enter__(self) -> LoadOrchestrator:
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        self.close()

    # ----------------------------
    # Lifecycle
    # ----------------------------
    def initialize(self) -> None:
        """Connects, creates the bookkeeping tables, applies pending DDL and resolves the types."""
        self.warehouse.connect()
        self.warehouse.bootstrap()
        self._sync_schema(force=True)
        logger.info("Working with types: %s", self.types)

    def close(self) -> None:
        try:
            self.store.delete_prefix(self.scratch_url)
        finally:
            self.warehouse.close()

    # ----------------------------
    # Public API
    # ----------------------------
    def load(
        self,
        start: datetime,
        end: datetime,
        chunking: Chunking = Chunking.DISABLED,
        replace: bool = False,
        completed_units: set[str] | None = None,
    ) -> None:
        """
        Loads every new file of [start, end] chunk by chunk.

        `completed_units` carries the (type, chunk) units already committed
        by a previous failed attempt so a retry winds forward past them; it
        is cleared once the whole range has been loaded.
        """
        completed = completed_units if completed_units is not None else set()
        logger.info(
            "Load data for %s - %s: chunking=%s, replace=%s",
            format_date_hour(start), format_date_hour(end), chunking.value, replace,
        )

        self._prepare(start, end)

        self._enter_phase(LoadPhase.LOAD_CHUNKS)
        for chunk in TimeChunk(start, end).split(chunking):
            for type_name in self.types:
                unit = f"{type_name}:{chunk}"
                if unit in completed:
                    logger.info("Already loaded %s, wind forward", unit)
                    continue

                with self.warehouse.transaction() as session:
                    self._load_unit(session, type_name, chunk, replace)
                completed.add(unit)

        completed.clear()
        self._enter_phase(LoadPhase.DONE)

    def load_with_retry(
        self,
        start: datetime,
        end: datetime,
        chunking: Chunking = Chunking.DISABLED,
        replace: bool = False,
    ) -> None:
        completed_units: set[str] = set()
        retry_or_raise(
            lambda: self.load(start, end, chunking, replace, completed_units),
            self.config.retry,
            description=f"load files for {format_date_hour(start)} - {format_date_hour(end)}",
            alerter=self.alerter,
            sleep=self.sleep,
        )
        logger.info("Loaded %s - %s", format_date_hour(start), format_date_hour(end))

    def replace_all_with_latest(
        self,
        start: datetime,
        end: datetime,
        completed_types: set[str] | None = None,
    ) -> None:
        """
        For every type with new files in [start, end]: deletes all its rows,
        imports only the most recent new file and records every new file.
        """
        completed = completed_types if completed_types is not None else set()
        logger.info(
            "Check for new files in %s - %s and replace old data with the newest if any",
            format_date_hour(start), format_date_hour(end),
        )

        with self.warehouse.transaction() as session:
            new_files = {t: self._new_files(session, t, start, end) for t in self.types}
        new_files = {t: files for t, files in new_files.items() if files}

        if not new_files:
            return

        self._prepare(start, end)

        self._enter_phase(LoadPhase.LOAD_CHUNKS)
        for type_name, files in new_files.items():
            if type_name in completed:
                continue

            latest = max(files, key=lambda f: f.sort_key)
            with self.warehouse.transaction() as session:
                self._delete_all_rows(session, type_name)
                self._copy(session, [latest], files)
            completed.add(type_name)

        completed.clear()
        self._enter_phase(LoadPhase.DONE)

    def replace_all_with_latest_with_retry(self, start: datetime, end: datetime) -> None:
        completed_types: set[str] = set()
        retry_or_raise(
            lambda: self.replace_all_with_latest(start, end, completed_types),
            self.config.retry,
            description=f"replace data for {format_date_hour(start)} - {format_date_hour(end)}",
            alerter=self.alerter,
            sleep=self.sleep,
        )
        logger.info("Replaced %s - %s", format_date_hour(start), format_date_hour(end))

    def delete(self, start: datetime, end: datetime) -> None:
        logger.info("Delete data for %s - %s", format_date_hour(start), format_date_hour(end))
        with self.warehouse.transaction() as session:
            for type_name in self.types:
                self._delete_existing(session, type_name, start, end)

    def recreate_views(self) -> None:
        logger.info("Recreate partition views for types %s", self.types)
        with self.warehouse.transaction() as session:
            for type_name in self.types:
                self.partitions.recreate_view(session, type_name)

    # ----------------------------
    # Phases
    # ----------------------------
    def _enter_phase(self, phase: LoadPhase) -> None:
        self.phase = phase
        logger.debug("Phase: %s", phase.value)

    def _prepare(self, start: datetime, end: datetime) -> None:
        self._enter_phase(LoadPhase.SYNC_SCHEMA)
        self._sync_schema(force=False)

        self._enter_phase(LoadPhase.PARTITION_TABLES)
        with self.warehouse.transaction() as session:
            self.partitions.partition(session, self.types, start, end)

        self._enter_phase(LoadPhase.CLEAN_LEDGER)
        self._cleanup_ledger()

    def _sync_schema(self, force: bool) -> None:
        with self.warehouse.transaction() as session:
            changed = self.schema_syncer.sync(session, force_regenerate_mappings=force)
            if changed or force:
                self.types = self._resolve_types(session)

    def _resolve_types(self, session: WarehouseSession) -> list[str]:
        logger.info("Fetch all registered types")
        all_types = self.column_mappings.tables(session)

        if self.requested_types is None:
            return all_types

        unknown = [t for t in self.requested_types if t not in all_types]
        if unknown:
            raise UnknownTypeError(f"Types {unknown} have no table to import into, must be among: {all_types}")
        return list(self.requested_types)

    def _cleanup_ledger(self) -> None:
        now = self.clock()
        if now < self._last_ledger_cleanup + self.config.ledger_cleanup_interval:
            return
        self._last_ledger_cleanup = now

        epoch = parse_date_hour(LEDGER_EPOCH)
        for type_name in self.types:
            retention_start = self.partitions.retention_start(type_name, now)
            if retention_start is None:
                continue

            logger.info("Remove import log entries older than %s for %s", format_date_hour(retention_start), type_name)
            try:
                with self.warehouse.transaction() as session:
                    self.import_ledger.delete_by_time_range(session, type_name, epoch, retention_start - ONE_HOUR)
            except Exception as e:
                self.alerter.alert(
                    f"Failed to remove old import logs for {type_name}, older than {format_date_hour(retention_start)}", e
                )

    # ----------------------------
    # Units of work
    # ----------------------------
    def _load_unit(self, session: WarehouseSession, type_name: str, chunk: TimeChunk, replace: bool) -> None:
        logger.info("Load %s for %s", type_name, chunk)

        if replace:
            self._delete_existing(session, type_name, chunk.start, chunk.end)

        files = self._new_files(session, type_name, chunk.start, chunk.end)
        if not files:
            return

        if type_name in self.config.snapshot_types:
            # A snapshot holds the full state, so it replaces the rows of the range;
            # superseded snapshots are recorded too so they never come back
            latest = max(files, key=lambda f: f.sort_key)
            if not replace:
                self._delete_rows(session, type_name, chunk.start, chunk.end)
            self._copy(session, [latest], files)
        else:
            self._copy(session, files, files)

    def _new_files(self, session: WarehouseSession, type_name: str, start: datetime, end: datetime) -> list[FileDescriptor]:
        imported_ids = set()
        for filename in self.import_ledger.find(session, type_name, start, end):
            try:
                imported_ids.add(FileDescriptor.from_url(filename).id)
            except DataFileError:
                logger.warning("Ignoring import log entry with an unparsable filename: %s", filename)
        return self.catalog.list_new(type_name, start, end, imported_ids)

    def _copy(
        self,
        session: WarehouseSession,
        to_import: Sequence[FileDescriptor],
        mark_imported: Sequence[FileDescriptor],
    ) -> None:
        by_table: dict[str, list[FileDescriptor]] = {}
        for f in to_import:
            by_table.setdefault(self.partitions.table(f.type, f.timestamp), []).append(f)

        for table, files in by_table.items():
            files.sort(key=lambda f: f.sort_key)
            self._copy_table(session, table, files)

        marked_by_table: dict[str, list[FileDescriptor]] = {}
        for f in mark_imported:
            marked_by_table.setdefault(self.partitions.table(f.type, f.timestamp), []).append(f)

        for table, files in marked_by_table.items():
            self.import_ledger.record(session, files, table)

    def _copy_table(self, session: WarehouseSession, table: str, files: list[FileDescriptor]) -> None:
        type_name = files[0].type
        manifest = write_manifest(self.store, self.manifests_dir, table, files)
        mapping = mapping_url(self.mappings_dir, type_name)
        staging_dir = None

        try:
            local_paths: tuple[str, ...] = ()
            jsonpaths: tuple[str, ...] = ()
            if not self.warehouse.copies_from_object_store:
                staging_dir = tempfile.mkdtemp(prefix="datasync-stage-")
                local_paths = tuple(
                    self.store.download(f.url, os.path.join(staging_dir, f"{i:05d}-{f.name}.{f.ext}"))
                    for i, f in enumerate(files)
                )
                jsonpaths = read_mapping(self.store, mapping)

            batch = LoadBatch(
                table=table,
                type=type_name,
                files=tuple(files),
                manifest_url=manifest,
                mapping_url=mapping,
                local_paths=local_paths,
            )

            logger.info("Copy %d files into %s (manifest: %s)", len(files), table, manifest)
            started = time.monotonic()
            session.bulk_load(batch, jsonpaths)
            logger.info("Copy into %s done (%.1f s)", table, time.monotonic() - started)
        finally:
            self.store.delete(manifest)
            if staging_dir is not None:
                shutil.rmtree(staging_dir, ignore_errors=True)

    def _delete_existing(self, session: WarehouseSession, type_name: str, start: datetime, end: datetime) -> None:
        if self._delete_rows(session, type_name, start, end):
            self.import_ledger.delete_by_time_range(session, type_name, start, end)
        else:
            self.import_ledger.delete_all_by_type(session, type_name)

    def _delete_rows(self, session: WarehouseSession, type_name: str, start: datetime, end: datetime) -> bool:
        """Deletes the rows of the range; returns False when the type has no timestamp column and lost all rows."""
        canonical = self.partitions.canonical_table(type_name)

        if not session.has_timestamp_column(canonical):
            logger.info("No timestamp column for type %s, delete all current rows", type_name)
            self._delete_all_rows(session, type_name)
            return False

        logger.info("Delete rows of %s for %s - %s", type_name, format_date_hour(start), format_date_hour(end))
        for table in self.partitions.tables_for_range(session, type_name, start, end):
            session.delete_by_time_range(table, start, end)
        return True

    def _delete_all_rows(self, session: WarehouseSession, type_name: str) -> None:
        for table in self.partitions.tables(session, type_name):
            deleted = session.delete_all(table)
            logger.info("Deleted all %d rows of %s", deleted, table)
