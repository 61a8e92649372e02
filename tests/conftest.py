"""Shared fixtures: local object store, in-memory DuckDB warehouse, fake clock."""

import gzip
import json
from datetime import datetime
from pathlib import Path

import fastavro
import pytest

from datasync.object_store import LocalObjectStore
from datasync.orchestrator import LoadOrchestrator
from datasync.sync_config import SyncConfig
from datasync.warehouse.duckdb_warehouse import DuckDbWarehouse

NOW = datetime(2024, 1, 10, 12)

BASE_DDL = """
// events are partitioned by day, accounts are snapshots
CREATE TABLE events_template (id VARCHAR, "timestamp" TIMESTAMP, value BIGINT);
CREATE TABLE accounts (id VARCHAR, name VARCHAR);
CREATE TABLE clicks (id VARCHAR, "timestamp" TIMESTAMP);

INSERT INTO sync_columnmapping VALUES (1, 'events', '$.id'), (2, 'events', '$.timestamp'), (3, 'events', '$.value');
INSERT INTO sync_columnmapping VALUES (1, 'accounts', '$.id'), (2, 'accounts', '$.name');
INSERT INTO sync_columnmapping VALUES (1, 'clicks', '$.id'), (2, 'clicks', '$.timestamp');
"""


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingAlerter:
    def __init__(self):
        self.alerts: list[tuple[str, BaseException | None]] = []

    def alert(self, message: str, exc: BaseException | None = None) -> bool:
        self.alerts.append((message, exc))
        return True


def epoch_millis(value: datetime) -> int:
    return int((value - datetime(1970, 1, 1)).total_seconds() * 1000)


def write_data_file(root: Path, type_name: str, hour: datetime, name: str, records: list[dict], ext: str = "json") -> str:
    directory = root / type_name / f"d={hour:%Y-%m-%d}" / f"h={hour:%H}"
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.{ext}"
    payload = "".join(json.dumps(r) + "\n" for r in records)
    if ext.endswith("gz"):
        path.write_bytes(gzip.compress(payload.encode("utf-8")))
    else:
        path.write_text(payload, encoding="utf-8")
    return path.as_posix()


METRIC_SCHEMA = fastavro.parse_schema({
    "type": "record",
    "name": "Metric",
    "fields": [
        {"name": "id", "type": "string"},
        {"name": "timestamp", "type": "long"},
        {"name": "value", "type": "long"},
    ],
})


def write_avro_file(root: Path, type_name: str, hour: datetime, name: str, records: list[dict]) -> str:
    directory = root / type_name / f"d={hour:%Y-%m-%d}" / f"h={hour:%H}"
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.avro"
    with open(path, "wb") as f:
        fastavro.writer(f, METRIC_SCHEMA, records)
    return path.as_posix()


def write_ddl(ddl_dir: Path, name: str, text: str) -> None:
    ddl_dir.mkdir(parents=True, exist_ok=True)
    (ddl_dir / name).write_text(text, encoding="utf-8")


@pytest.fixture
def layout(tmp_path):
    paths = {
        "root": tmp_path / "raw",
        "ddl": tmp_path / "ddl",
        "tmp": tmp_path / "tmp",
    }
    for path in paths.values():
        path.mkdir()
    write_ddl(paths["ddl"], "001_base.ddl", BASE_DDL)
    return paths


@pytest.fixture
def store():
    return LocalObjectStore()


@pytest.fixture
def alerter():
    return RecordingAlerter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


def build_config(layout, **overrides) -> SyncConfig:
    raw = {
        "object_store": {
            "kind": "local",
            "root_dir": layout["root"].as_posix(),
            "ddl_dir": layout["ddl"].as_posix(),
            "tmp_dir": layout["tmp"].as_posix(),
        },
        "partitionings": [{"type": "events", "granularity": "daily", "retained_buckets": 3}],
        "types": {"accounts": {"snapshot_files": True}},
        "retry": {"max_attempts": 3, "backoff_seconds": 0.0, "escalate_every": 5},
    }
    raw.update(overrides)
    return SyncConfig.model_validate(raw)


@pytest.fixture
def make_orchestrator(layout, store, alerter, clock, sleeps):
    created: list[LoadOrchestrator] = []

    def factory(requested_types=None, **overrides) -> LoadOrchestrator:
        orchestrator = LoadOrchestrator.from_config(
            build_config(layout, **overrides),
            requested_types=requested_types,
            warehouse=DuckDbWarehouse(timestamp_column="timestamp"),
            store=store,
            alerter=alerter,
            clock=clock,
            sleep=sleeps.append,
        )
        orchestrator.initialize()
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        orchestrator.close()


def count_rows(orchestrator: LoadOrchestrator, table: str) -> int:
    with orchestrator.warehouse.transaction() as session:
        return session.fetchall(f"SELECT COUNT(*) FROM {session.quote(table)}")[0][0]


def ledger_rows(orchestrator: LoadOrchestrator) -> list[tuple]:
    with orchestrator.warehouse.transaction() as session:
        return session.fetchall('SELECT filename, tablename, "timestamp" FROM sync_importlog ORDER BY filename')
