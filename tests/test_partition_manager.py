from datetime import datetime

import pytest

from conftest import FakeClock
from datasync.errors import ConfigurationError, RetentionWindowError
from datasync.partition_manager import PartitionManager
from datasync.sync_config import PartitioningSpec
from datasync.warehouse.duckdb_warehouse import DuckDbWarehouse


def daily(retained: int = 3, **extra) -> PartitioningSpec:
    return PartitioningSpec.model_validate(
        {"type": "events", "granularity": "daily", "retained_buckets": retained, **extra}
    )


@pytest.fixture
def warehouse():
    with DuckDbWarehouse(timestamp_column="timestamp") as warehouse:
        with warehouse.transaction() as session:
            session.execute('CREATE TABLE events_template (id VARCHAR, "timestamp" TIMESTAMP)')
        yield warehouse


def bucket_tables(warehouse) -> list[str]:
    with warehouse.transaction() as session:
        return session.list_tables_with_prefix("events_partition_")


class TestLookups:
    def test_unpartitioned_types_map_to_themselves(self):
        partitions = PartitionManager([daily()])
        assert partitions.table("clicks", datetime(2024, 1, 1)) == "clicks"
        assert partitions.canonical_table("clicks") == "clicks"
        assert partitions.retention_start("clicks") is None

    def test_partitioned_lookups(self):
        partitions = PartitionManager([daily()], clock=FakeClock(datetime(2024, 1, 10, 12)))
        assert partitions.table("events", datetime(2024, 1, 9, 23)) == "events_partition_20240109"
        assert partitions.canonical_table("events") == "events_template"
        assert partitions.retention_start("events") == datetime(2024, 1, 8)


class TestPartition:
    def test_creates_buckets_and_view(self, warehouse):
        partitions = PartitionManager([daily()], clock=FakeClock(datetime(2024, 1, 10, 12)))

        with warehouse.transaction() as session:
            partitions.partition(session, ["events", "clicks"], datetime(2024, 1, 9, 5), datetime(2024, 1, 10, 3))
            session.execute("INSERT INTO events_partition_20240109 VALUES ('a', TIMESTAMP '2024-01-09 05:00:00')")
            session.execute("INSERT INTO events_partition_20240110 VALUES ('b', TIMESTAMP '2024-01-10 03:00:00')")

            assert session.fetchall("SELECT id FROM events ORDER BY id") == [("a",), ("b",)]
        assert bucket_tables(warehouse) == ["events_partition_20240109", "events_partition_20240110"]

    def test_violation_leaves_layout_untouched(self, warehouse):
        clock = FakeClock(datetime(2024, 1, 10, 12))
        partitions = PartitionManager([daily()], clock=clock)
        with warehouse.transaction() as session:
            partitions.partition(session, ["events"], datetime(2024, 1, 9), datetime(2024, 1, 10))

        with pytest.raises(RetentionWindowError):
            with warehouse.transaction() as session:
                partitions.partition(session, ["events"], datetime(2024, 1, 1), datetime(2024, 1, 2))

        assert bucket_tables(warehouse) == ["events_partition_20240109", "events_partition_20240110"]

    def test_missing_canonical_table_is_a_configuration_error(self, warehouse):
        partitions = PartitionManager(
            [daily(type="metrics")], clock=FakeClock(datetime(2024, 1, 10, 12))
        )
        with pytest.raises(ConfigurationError):
            with warehouse.transaction() as session:
                partitions.partition(session, ["metrics"], datetime(2024, 1, 10), datetime(2024, 1, 10))

        with warehouse.transaction() as session:
            assert session.list_tables_with_prefix("metrics_partition_") == []
            assert not session.table_exists("metrics_template")

    def test_oldest_buckets_are_dropped(self, warehouse):
        clock = FakeClock(datetime(2024, 1, 10, 12))
        partitions = PartitionManager([daily(retained=2)], clock=clock)
        with warehouse.transaction() as session:
            partitions.partition(session, ["events"], datetime(2024, 1, 9), datetime(2024, 1, 10))

        clock.now = datetime(2024, 1, 12, 1)
        with warehouse.transaction() as session:
            partitions.partition(session, ["events"], datetime(2024, 1, 11), datetime(2024, 1, 12, 1))
            assert partitions.tables(session, "events") == ["events_partition_20240111", "events_partition_20240112"]
            assert session.fetchall("SELECT COUNT(*) FROM events") == [(0,)]

    def test_foreign_tables_with_the_prefix_are_ignored(self, warehouse):
        partitions = PartitionManager([daily()], clock=FakeClock(datetime(2024, 1, 10, 12)))
        with warehouse.transaction() as session:
            session.execute("CREATE TABLE events_partition_backup (id VARCHAR)")
            partitions.partition(session, ["events"], datetime(2024, 1, 10), datetime(2024, 1, 10))
            assert partitions.tables(session, "events") == ["events_partition_20240110"]

    def test_separate_view_uses_type_table_as_canonical(self, warehouse):
        partitions = PartitionManager(
            [daily(view="events_all", type="metrics")], clock=FakeClock(datetime(2024, 1, 10, 12))
        )
        with warehouse.transaction() as session:
            session.execute("CREATE TABLE metrics (v BIGINT)")
            partitions.partition(session, ["metrics"], datetime(2024, 1, 10), datetime(2024, 1, 10))
            assert session.list_tables_with_prefix("metrics_partition_") == ["metrics_partition_20240110"]
            assert session.fetchall("SELECT COUNT(*) FROM events_all") == [(0,)]

    def test_tables_for_range(self, warehouse):
        partitions = PartitionManager([daily()], clock=FakeClock(datetime(2024, 1, 10, 12)))
        with warehouse.transaction() as session:
            partitions.partition(session, ["events"], datetime(2024, 1, 8), datetime(2024, 1, 10))
            assert partitions.tables_for_range(session, "events", datetime(2024, 1, 9, 3), datetime(2024, 1, 9, 4)) == [
                "events_partition_20240109"
            ]
            assert partitions.tables_for_range(session, "clicks", datetime(2024, 1, 9), datetime(2024, 1, 9)) == ["clicks"]
