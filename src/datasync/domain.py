import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum

from datasync.errors import DataFileError

DATA_FILE_PATTERN = re.compile(r".*/([^/]+)/d=([0-9]{4}-[0-9]{2}-[0-9]{2})/h=([0-9]{2})/(.*)\.(.*)")
COMPOUND_EXTENSION_PREFIXES = ("json", "tsv", "csv")


@dataclass(frozen=True)
class FileDescriptor:
    """
    A data file found in the object store.

    Keys follow <root>/<type>/d=<yyyy-MM-dd>/h=<HH>/<name>.<ext>. The id
    ("<yyyy-MM-dd>/<HH>/<type>/<name>") is what the import ledger dedupes on,
    so it must not depend on the root the file was listed from.
    """
    type: str
    bucket_date: date
    bucket_hour: int
    name: str
    ext: str
    url: str

    @classmethod
    def from_url(cls, url: str) -> "FileDescriptor":
        match = DATA_FILE_PATTERN.fullmatch(url)
        if not match:
            raise DataFileError(f"Invalid data file url: {url}")

        type_name, date_text, hour_text, name, ext = match.groups()

        # name.json.gz -> (name, json.gz)
        for prefix in COMPOUND_EXTENSION_PREFIXES:
            suffix = f".{prefix}"
            if name.endswith(suffix):
                name = name[: -len(suffix)]
                ext = f"{prefix}.{ext}"
                break

        try:
            bucket_date = datetime.strptime(date_text, "%Y-%m-%d").date()
        except ValueError as e:
            raise DataFileError(f"Invalid date in data file url: {url}") from e

        bucket_hour = int(hour_text)
        if bucket_hour > 23:
            raise DataFileError(f"Invalid hour in data file url: {url}")

        return cls(type=type_name, bucket_date=bucket_date, bucket_hour=bucket_hour, name=name, ext=ext, url=url)

    @property
    def timestamp(self) -> datetime:
        return datetime.combine(self.bucket_date, datetime.min.time()) + timedelta(hours=self.bucket_hour)

    @property
    def id(self) -> str:
        return f"{self.bucket_date:%Y-%m-%d}/{self.bucket_hour:02d}/{self.type}/{self.name}"

    @property
    def base_format(self) -> str:
        return self.ext.split(".", 1)[0].lower()

    @property
    def is_gzip(self) -> bool:
        return self.ext.lower().endswith("gz")

    @property
    def is_avro(self) -> bool:
        return self.base_format == "avro"

    @property
    def is_json(self) -> bool:
        return self.base_format == "json"

    @property
    def is_tsv(self) -> bool:
        return self.base_format == "tsv"

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return self.timestamp, self.name


@dataclass(frozen=True)
class ImportLedgerEntry:
    filename: str
    tablename: str
    timestamp: datetime  # naive UTC, the file's bucket hour


@dataclass(frozen=True)
class DdlLedgerEntry:
    filename: str
    sql_text: str
    applied_at: datetime


@dataclass(frozen=True)
class ColumnMapping:
    """Ordered json paths feeding the columns of one table, by mapping id."""
    table: str
    jsonpaths: tuple[str, ...]


@dataclass(frozen=True)
class ColumnDetail:
    name: str
    data_type: str
    nullable: bool


@dataclass(frozen=True)
class LoadBatch:
    """
    One bulk copy into one destination table.

    local_paths is only filled for dialects that read staged local copies of
    the files instead of the object store itself.
    """
    table: str
    type: str
    files: tuple[FileDescriptor, ...]
    manifest_url: str
    mapping_url: str
    local_paths: tuple[str, ...] = field(default=())


class LoadPhase(str, Enum):
    SYNC_SCHEMA = "sync_schema"
    PARTITION_TABLES = "partition_tables"
    CLEAN_LEDGER = "clean_ledger"
    LOAD_CHUNKS = "load_chunks"
    DONE = "done"
