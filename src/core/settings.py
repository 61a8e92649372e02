import os
from typing import Any
from pathlib import Path

PROJECT_NAME = "datasync"

# Paths
PROJECT_ROOT_DIR = Path(__file__).parent.parent.parent.resolve()

LOG_FOLDER = Path(os.getenv("DATASYNC_LOG_DIR", PROJECT_ROOT_DIR / "logs"))
DEFAULT_CONFIG_PATH = Path(os.getenv("DATASYNC_CONFIG", PROJECT_ROOT_DIR / "config" / "datasync.yaml"))

# Bookkeeping tables in the target warehouse
TABLE_IMPORT_LOG = "sync_importlog"
TABLE_DDL_LOG = "sync_ddllog"
TABLE_COLUMN_MAPPING = "sync_columnmapping"

# Bucket tables
PARTITION_TABLE_INFIX = "_partition_"
TEMPLATE_TABLE_SUFFIX = "_template"

# Default name of the column holding a row's event time
DEFAULT_TIMESTAMP_COLUMN = "timestamp"

# Scratch layout under the configured tmp dir
SCRATCH_MANIFESTS_DIRNAME = "manifests"
SCRATCH_MAPPINGS_DIRNAME = "mappings"

# Retry / scheduling
DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_RETRY_BACKOFF_SECONDS = 60.0
DEFAULT_ESCALATE_EVERY = 5
MIN_SCAN_SLACK_SECONDS = 60.0
DEFAULT_LEDGER_CLEANUP_INTERVAL_HOURS = 24
DEFAULT_LISTING_MAX_WORKERS = 20

# Lower bound used when purging the import log
LEDGER_EPOCH = "2000-01-01:00"


# Logging Configuration

def build_logging_config(log_folder: Path = LOG_FOLDER) -> dict[str, Any]:
    os.makedirs(log_folder, exist_ok=True)
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "level": "INFO",
            },
            "rotating_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "formatter": "standard",
                "level": "DEBUG",
                "filename": str(log_folder / "datasync.log"),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
                "encoding": "utf8",
            },
        },
        "loggers": {
            "": {  # root logger
                "handlers": ["console", "rotating_file"],
                "level": "DEBUG",
                "propagate": True
            },
            "botocore": {"level": "WARNING"},
            "urllib3": {"level": "WARNING"},
        }
    }
