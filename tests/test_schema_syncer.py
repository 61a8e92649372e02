import json
from datetime import datetime

import pytest

from conftest import FakeClock, write_ddl
from datasync.ledger_store import ColumnMappingStore, DdlLedger
from datasync.object_store import LocalObjectStore
from datasync.partition_manager import PartitionManager
from datasync.schema_syncer import SchemaSyncer, split_statements
from datasync.sync_config import PartitioningSpec
from datasync.warehouse.duckdb_warehouse import DuckDbWarehouse


class TestSplitStatements:
    def test_strips_comments_and_trailing_text(self):
        ddl = "CREATE TABLE a (x INT); // first\n// whole line\nCREATE TABLE b (y INT);\ntrailing garbage"
        assert [s.strip() for s in split_statements(ddl)] == ["CREATE TABLE a (x INT)", "CREATE TABLE b (y INT)"]

    def test_comment_on_last_line_without_newline(self):
        assert [s.strip() for s in split_statements("DROP TABLE a; // done")] == ["DROP TABLE a"]

    def test_no_terminator_means_no_statements(self):
        assert split_statements("CREATE TABLE a (x INT)") == []


@pytest.fixture
def warehouse():
    with DuckDbWarehouse(timestamp_column="timestamp") as warehouse:
        warehouse.bootstrap()
        yield warehouse


@pytest.fixture
def syncer(tmp_path):
    partitions = PartitionManager(
        [PartitioningSpec.model_validate({"type": "events", "granularity": "daily", "retained_buckets": 5})],
        clock=FakeClock(datetime(2024, 1, 10, 12)),
    )
    return SchemaSyncer(
        store=LocalObjectStore(),
        ddl_dir=(tmp_path / "ddl").as_posix(),
        mappings_dir=(tmp_path / "mappings").as_posix(),
        partitions=partitions,
        ddl_ledger=DdlLedger(),
        column_mappings=ColumnMappingStore(),
    )


class TestSchemaSyncer:
    def test_files_are_applied_once_in_key_order(self, warehouse, syncer, tmp_path):
        write_ddl(tmp_path / "ddl", "002_b.ddl", "INSERT INTO log VALUES ('b');")
        write_ddl(tmp_path / "ddl", "001_a.ddl", "CREATE TABLE log (v VARCHAR); INSERT INTO log VALUES ('a');")
        write_ddl(tmp_path / "ddl", "README.txt", "not ddl")

        with warehouse.transaction() as session:
            assert syncer.sync(session) is True
        with warehouse.transaction() as session:
            assert syncer.sync(session) is False
            assert session.fetchall("SELECT v FROM log ORDER BY v") == [("a",), ("b",)]
            assert session.fetchall("SELECT filename FROM sync_ddllog ORDER BY filename") == [
                ("001_a.ddl",),
                ("002_b.ddl",),
            ]

    def test_failed_file_rolls_back_with_ledger(self, warehouse, syncer, tmp_path):
        write_ddl(tmp_path / "ddl", "001_bad.ddl", "CREATE TABLE ok (v INT); CREATE TABLE broken (;")

        with pytest.raises(Exception):
            with warehouse.transaction() as session:
                syncer.sync(session)

        with warehouse.transaction() as session:
            assert not session.table_exists("ok")
            assert session.fetchall("SELECT COUNT(*) FROM sync_ddllog") == [(0,)]

    def test_alter_reaches_canonical_and_bucket_tables(self, warehouse, syncer, tmp_path):
        with warehouse.transaction() as session:
            session.execute('CREATE TABLE events_template (id VARCHAR, "timestamp" TIMESTAMP)')
            session.execute("CREATE TABLE events_partition_20240109 AS SELECT * FROM events_template LIMIT 0")
            session.execute("CREATE TABLE events_partition_20240110 AS SELECT * FROM events_template LIMIT 0")

        write_ddl(tmp_path / "ddl", "001_alter.ddl", "alter table\n  events\n  add column note VARCHAR;")
        with warehouse.transaction() as session:
            syncer.sync(session)

            for table in ("events_template", "events_partition_20240109", "events_partition_20240110"):
                assert session.has_column(table, "note")
            assert session.fetchall("SELECT * FROM events") == []

    def test_expand_leaves_other_statements_alone(self, warehouse, syncer):
        with warehouse.transaction() as session:
            sql = "ALTER TABLE clicks ADD COLUMN x INT"
            assert syncer.altered_partitioned_type(sql) is None
            assert syncer.expand_for_partitions(session, sql) == [sql]
            assert syncer.altered_partitioned_type('ALTER TABLE public."events" ADD COLUMN x INT') == "events"

    def test_mapping_artifacts(self, warehouse, syncer, tmp_path):
        write_ddl(
            tmp_path / "ddl",
            "001_map.ddl",
            "INSERT INTO sync_columnmapping VALUES (2, 'clicks', '$.b'), (1, 'clicks', '$.a'), (1, 'views', '$.v');",
        )
        with warehouse.transaction() as session:
            syncer.sync(session)

        document = json.loads((tmp_path / "mappings" / "clicks.json").read_text(encoding="utf-8"))
        assert document == {"jsonpaths": ["$.a", "$.b"]}
        assert (tmp_path / "mappings" / "views.json").exists()
