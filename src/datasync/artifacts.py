"""Copy manifests and column-mapping artifacts written next to a load."""

import json
import logging
import uuid
from collections.abc import Sequence

from datasync.domain import ColumnMapping, FileDescriptor
from datasync.errors import SyncError
from datasync.object_store import ObjectStore, join_url

logger = logging.getLogger(__name__)


def manifest_document(files: Sequence[FileDescriptor]) -> dict:
    return {"entries": [{"url": f.url, "mandatory": True} for f in files]}


def write_manifest(store: ObjectStore, manifests_dir: str, table: str, files: Sequence[FileDescriptor]) -> str:
    url = join_url(manifests_dir, f"{table}-{uuid.uuid4().hex}.manifest")
    store.write_text(url, json.dumps(manifest_document(files), indent=2))
    logger.debug("Wrote manifest %s with %d entries", url, len(files))
    return url


def mapping_url(mappings_dir: str, table: str) -> str:
    return join_url(mappings_dir, f"{table}.json")


def write_mapping(store: ObjectStore, mappings_dir: str, mapping: ColumnMapping) -> str:
    url = mapping_url(mappings_dir, mapping.table)
    store.write_text(url, json.dumps({"jsonpaths": list(mapping.jsonpaths)}, indent=2))
    logger.debug("Wrote column mapping %s (%d paths)", url, len(mapping.jsonpaths))
    return url


def read_mapping(store: ObjectStore, url: str) -> tuple[str, ...]:
    try:
        document = json.loads(store.read_text(url))
    except (OSError, ValueError) as e:
        raise SyncError(f"Cannot read column mapping {url}: {e}") from e

    paths = document.get("jsonpaths") if isinstance(document, dict) else None
    if not isinstance(paths, list):
        raise SyncError(f"Column mapping {url} has no jsonpaths list")
    return tuple(paths)
