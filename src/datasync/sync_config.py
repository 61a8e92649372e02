import logging
from datetime import datetime
from pathlib import Path
from typing import Literal, Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from core.settings import (
    DEFAULT_ESCALATE_EVERY,
    DEFAULT_LEDGER_CLEANUP_INTERVAL_HOURS,
    DEFAULT_LISTING_MAX_WORKERS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    DEFAULT_TIMESTAMP_COLUMN,
    PARTITION_TABLE_INFIX,
    TEMPLATE_TABLE_SUFFIX,
)
from datasync.datehour import Granularity, bucket_key, bucket_start, shift_buckets
from datasync.errors import ConfigurationError

logger = logging.getLogger(__name__)


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


class ObjectStoreSpec(StrictBaseModel):
    kind: Literal["s3", "local"] = "local"
    root_dir: str
    ddl_dir: str
    tmp_dir: str

    endpoint_url: str | None = None
    region_name: str | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if self.kind == "s3":
            for name in ("root_dir", "ddl_dir", "tmp_dir"):
                if not getattr(self, name).startswith("s3://"):
                    raise ValueError(f"{name} must be an s3:// url when kind is s3")
        return self


class WarehouseSpec(StrictBaseModel):
    dialect: Literal["duckdb", "redshift", "mysql"] = "duckdb"
    database: str = ":memory:"

    host: str | None = None
    port: int | None = None
    schema_name: str | None = None
    user: str | None = None
    password: str | None = None

    timestamp_column: str = DEFAULT_TIMESTAMP_COLUMN

    # Redshift COPY authorization, either a role or a key pair
    iam_role: str | None = None
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if self.dialect in ("redshift", "mysql") and not self.host:
            raise ValueError(f"host must be specified for the {self.dialect} dialect")

        if (self.aws_access_key_id is None) ^ (self.aws_secret_access_key is None):
            raise ValueError("Both aws_access_key_id and aws_secret_access_key must be specified together")

        return self


class PartitioningSpec(StrictBaseModel):
    """
    Emulated time partitioning of one type.

    Rows live in bucket tables <type>_partition_<bucket key>; `view` unions
    the retained buckets. The canonical table every bucket is cloned from is
    the table named after the type, or <type>_template when the view already
    takes that name.
    """
    type: str
    view: str | None = None
    granularity: Granularity
    retained_buckets: int = Field(gt=0)

    @model_validator(mode="before")
    @classmethod
    def coerce_granularity(cls, data):
        # YAML hands over plain strings; strict mode would reject them for the enum
        if isinstance(data, dict) and isinstance(data.get("granularity"), str):
            data = dict(data)
            data["granularity"] = Granularity(data["granularity"].lower())
        return data

    @property
    def view_name(self) -> str:
        return self.view or self.type

    @property
    def canonical_table(self) -> str:
        if self.view_name == self.type:
            return f"{self.type}{TEMPLATE_TABLE_SUFFIX}"
        return self.type

    @property
    def table_prefix(self) -> str:
        return f"{self.type}{PARTITION_TABLE_INFIX}"

    def bucket_key(self, hour: datetime) -> str:
        return bucket_key(hour, self.granularity)

    def table_name(self, hour: datetime) -> str:
        return f"{self.table_prefix}{self.bucket_key(hour)}"

    def retention_start(self, now: datetime) -> datetime:
        """Start of the oldest bucket still retained at `now`."""
        current = bucket_start(now, self.granularity)
        return shift_buckets(current, self.granularity, -(self.retained_buckets - 1))


class TypeSpec(StrictBaseModel):
    # Each file is a full snapshot: only the latest new one is imported
    snapshot_files: bool = False


class RetrySpec(StrictBaseModel):
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, gt=0)
    backoff_seconds: float = Field(default=DEFAULT_RETRY_BACKOFF_SECONDS, ge=0)
    escalate_every: int = Field(default=DEFAULT_ESCALATE_EVERY, gt=0)


class AlertingSpec(StrictBaseModel):
    kind: Literal["log", "sns"] = "log"
    topic_arn: str | None = None
    region_name: str | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        if self.kind == "sns" and not self.topic_arn:
            raise ValueError("topic_arn must be specified when alerting kind is sns")
        return self


class SyncConfig(StrictBaseModel):
    object_store: ObjectStoreSpec
    warehouse: WarehouseSpec = Field(default_factory=WarehouseSpec)
    partitionings: list[PartitioningSpec] = Field(default_factory=list)
    types: dict[str, TypeSpec] = Field(default_factory=dict)
    retry: RetrySpec = Field(default_factory=RetrySpec)
    alerting: AlertingSpec = Field(default_factory=AlertingSpec)

    listing_max_workers: int = Field(default=DEFAULT_LISTING_MAX_WORKERS, gt=0)
    ledger_cleanup_interval_hours: int = Field(default=DEFAULT_LEDGER_CLEANUP_INTERVAL_HOURS, gt=0)

    @model_validator(mode="after")
    def validate_config(self) -> Self:
        seen: set[str] = set()
        for spec in self.partitionings:
            if spec.type in seen:
                raise ValueError(f"Duplicate partitioning for type {spec.type}")
            seen.add(spec.type)
        return self

    def is_snapshot_type(self, type_name: str) -> bool:
        spec = self.types.get(type_name)
        return spec is not None and spec.snapshot_files


def load_sync_config(path: str | Path) -> SyncConfig:
    path = Path(path)
    logger.debug("Loading sync config from %s", path)

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping at the top level")

    try:
        return SyncConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config file {path}:\n{e}") from e
