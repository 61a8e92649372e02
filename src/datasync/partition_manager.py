import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from datasync.datehour import BUCKET_KEY_FORMATS, format_date_hour, hours_between, truncate_to_hour, utc_now
from datasync.errors import ConfigurationError, RetentionWindowError
from datasync.sync_config import PartitioningSpec
from datasync.warehouse.base import WarehouseSession

logger = logging.getLogger(__name__)

# Width of a rendered bucket key per granularity, e.g. %Y%m%d%H -> 10
BUCKET_KEY_WIDTHS = {
    granularity: len(datetime(2000, 1, 3).strftime(key_format))
    for granularity, key_format in BUCKET_KEY_FORMATS.items()
}


class PartitionManager:
    """
    Emulated time partitioning.

    Rows of a partitioned type live in bucket tables cloned from the type's
    canonical table; the union view always covers exactly the retained
    buckets, oldest first. Types without a partitioning map to the table of
    the same name.
    """

    def __init__(self, partitionings: Sequence[PartitioningSpec], *, clock: Callable[[], datetime] = utc_now):
        self._specs = {spec.type: spec for spec in partitionings}
        self._clock = clock

    def is_partitioned(self, type_name: str) -> bool:
        return type_name in self._specs

    def canonical_table(self, type_name: str) -> str:
        spec = self._specs.get(type_name)
        return spec.canonical_table if spec else type_name

    def table(self, type_name: str, hour: datetime) -> str:
        spec = self._specs.get(type_name)
        return spec.table_name(hour) if spec else type_name

    def retention_start(self, type_name: str, now: datetime | None = None) -> datetime | None:
        spec = self._specs.get(type_name)
        if spec is None:
            return None
        return spec.retention_start(now or self._clock())

    # ----------------------------
    # Warehouse lookups
    # ----------------------------
    def tables(self, session: WarehouseSession, type_name: str) -> list[str]:
        """Existing tables holding rows of the type, oldest bucket first."""
        spec = self._specs.get(type_name)
        if spec is None:
            return [type_name]
        return self._existing_bucket_tables(session, spec)

    def tables_for_range(self, session: WarehouseSession, type_name: str, start: datetime, end: datetime) -> list[str]:
        spec = self._specs.get(type_name)
        if spec is None:
            return [type_name]
        wanted = {spec.table_name(hour) for hour in hours_between(start, end)}
        return [t for t in self._existing_bucket_tables(session, spec) if t in wanted]

    def _existing_bucket_tables(self, session: WarehouseSession, spec: PartitioningSpec) -> list[str]:
        width = BUCKET_KEY_WIDTHS[spec.granularity]
        tables = []
        for table in session.list_tables_with_prefix(spec.table_prefix):
            key = table[len(spec.table_prefix):]
            if len(key) == width and key.isdigit():
                tables.append(table)
        return sorted(tables)

    # ----------------------------
    # Layout changes
    # ----------------------------
    def partition(self, session: WarehouseSession, types: Sequence[str], start: datetime, end: datetime) -> None:
        for type_name in types:
            spec = self._specs.get(type_name)
            if spec is not None:
                self._partition_type(session, spec, start, end)

    def _partition_type(self, session: WarehouseSession, spec: PartitioningSpec, start: datetime, end: datetime) -> None:
        now = truncate_to_hour(self._clock())

        existing = set(self._existing_bucket_tables(session, spec))
        needed = {spec.table_name(hour) for hour in hours_between(start, end) if hour <= now}

        to_add = needed - existing
        all_sorted = sorted(existing | needed, reverse=True)
        to_remove = all_sorted[spec.retained_buckets:]

        violating = to_add.intersection(to_remove)
        if violating:
            raise RetentionWindowError(
                f"Range {format_date_hour(start)} - {format_date_hour(end)} for {spec.type} needs buckets "
                f"{sorted(violating)} outside the {spec.retained_buckets} retained {spec.granularity.value} buckets"
            )

        if not to_add and not to_remove:
            return

        template = spec.canonical_table
        if to_add and not session.table_exists(template):
            raise ConfigurationError(f"Canonical table {template} of partitioned type {spec.type} does not exist")
        for table in sorted(to_add):
            session.create_table_like(table, template)

        retained = sorted(set(all_sorted) - set(to_remove))
        session.recreate_view(spec.view_name, retained)

        for table in to_remove:
            session.drop_table(table)

        logger.info(
            "Partitioned %s: added %s, removed %s, view %s over %d tables",
            spec.type, sorted(to_add), to_remove, spec.view_name, len(retained),
        )

    def recreate_view(self, session: WarehouseSession, type_name: str) -> None:
        spec = self._specs.get(type_name)
        if spec is None:
            return
        session.recreate_view(spec.view_name, self._existing_bucket_tables(session, spec))
