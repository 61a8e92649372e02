"""
Readers turning staged data files into positional rows for dialects that
cannot bulk-copy straight from the object store.

Values follow the conventions of the warehouse COPY: json paths select the
value of each column in table order, and numbers landing in date/time
columns are epoch milliseconds.
"""
import json
import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import fastavro
import pyarrow as pa
import pyarrow.csv as pv
import pyarrow.json as pj

from datasync.domain import ColumnDetail, FileDescriptor
from datasync.errors import SyncError, UnsupportedFormatError

logger = logging.getLogger(__name__)

JSONPATH_TOKEN = re.compile(r"\.([^.\[\]]+)|\[(\d+)\]|\[['\"]([^'\"]+)['\"]\]")
TEMPORAL_TYPE_MARKERS = ("timestamp", "datetime", "date")
TSV_NULL = "\\N"


def parse_jsonpath(path: str) -> list[str | int]:
    """'$.a.b[0]' -> ['a', 'b', 0]"""
    if not path.startswith("$"):
        raise SyncError(f"Invalid json path: {path}")

    tokens: list[str | int] = []
    position = 1
    while position < len(path):
        match = JSONPATH_TOKEN.match(path, position)
        if not match:
            raise SyncError(f"Invalid json path: {path}")
        name, index, quoted = match.groups()
        tokens.append(int(index) if index is not None else (name if name is not None else quoted))
        position = match.end()
    return tokens


def extract_path(record: Any, tokens: list[str | int]) -> Any:
    value = record
    for token in tokens:
        if isinstance(token, int):
            if not isinstance(value, list) or token >= len(value):
                return None
            value = value[token]
        else:
            if not isinstance(value, dict):
                return None
            value = value.get(token)
        if value is None:
            return None
    return value


def is_temporal(data_type: str) -> bool:
    lowered = data_type.lower()
    return any(marker in lowered for marker in TEMPORAL_TYPE_MARKERS)


def format_cell(value: Any, data_type: str, *, true_text: str = "true", false_text: str = "false") -> str | None:
    if value is None:
        return None

    if isinstance(value, bool):
        return true_text if value else false_text

    if is_temporal(data_type) and isinstance(value, (int, float, Decimal)):
        moment = datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc).replace(tzinfo=None)
        return moment.isoformat(sep=" ", timespec="milliseconds")

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat(sep=" ")

    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)

    return str(value)


# ----------------------------
# Readers
# ----------------------------
def read_json_records(local_path: str) -> list[dict[str, Any]]:
    # Newline delimited json; .gz paths are decompressed by pyarrow
    table = pj.read_json(local_path)
    return table.to_pylist()


def read_avro_records(local_path: str) -> list[dict[str, Any]]:
    # Object container files carry their own schema
    try:
        with open(local_path, "rb") as f:
            return list(fastavro.reader(f))
    except ValueError as e:
        raise SyncError(f"Failed to read avro file {local_path}: {e}") from e


def map_records(
    records: list[dict[str, Any]],
    jsonpaths: tuple[str, ...],
    columns: list[ColumnDetail],
    source: str,
    **format_options: str,
) -> list[list[str | None]]:
    if len(jsonpaths) > len(columns):
        raise SyncError(f"{len(jsonpaths)} json paths but only {len(columns)} columns for {source}")

    compiled = [parse_jsonpath(p) for p in jsonpaths]
    rows: list[list[str | None]] = []
    for record in records:
        rows.append([
            format_cell(extract_path(record, tokens), column.data_type, **format_options)
            for tokens, column in zip(compiled, columns)
        ])
    return rows


def read_json_rows(
    local_path: str,
    jsonpaths: tuple[str, ...],
    columns: list[ColumnDetail],
    **format_options: str,
) -> list[list[str | None]]:
    return map_records(read_json_records(local_path), jsonpaths, columns, local_path, **format_options)


def read_avro_rows(
    local_path: str,
    jsonpaths: tuple[str, ...],
    columns: list[ColumnDetail],
    **format_options: str,
) -> list[list[str | None]]:
    return map_records(read_avro_records(local_path), jsonpaths, columns, local_path, **format_options)


def read_tsv_rows(
    local_path: str,
    columns: list[ColumnDetail],
    **format_options: str,
) -> list[list[str | None]]:
    column_names = [c.name for c in columns]

    read_options = pv.ReadOptions(column_names=column_names, autogenerate_column_names=False)
    parse_options = pv.ParseOptions(delimiter="\t", quote_char=False, double_quote=False, newlines_in_values=False)
    convert_options = pv.ConvertOptions(
        column_types={name: pa.string() for name in column_names},
        null_values=[TSV_NULL],
        strings_can_be_null=True,
    )

    try:
        table = pv.read_csv(local_path, read_options=read_options, parse_options=parse_options, convert_options=convert_options)
    except pa.ArrowInvalid as e:
        raise SyncError(f"Failed to read tsv file {local_path}: {e}") from e

    rows: list[list[str | None]] = []
    for record in table.to_pylist():
        rows.append([format_cell(_tsv_value(record[c.name], c.data_type), c.data_type, **format_options) for c in columns])
    return rows


def _tsv_value(text: str | None, data_type: str) -> Any:
    # TSV exports carry times as epoch millis too
    if text is not None and is_temporal(data_type) and text.lstrip("-").isdigit():
        return int(text)
    return text


def read_rows(
    descriptor: FileDescriptor,
    local_path: str,
    jsonpaths: tuple[str, ...],
    columns: list[ColumnDetail],
    **format_options: str,
) -> list[list[str | None]]:
    if descriptor.is_json:
        rows = read_json_rows(local_path, jsonpaths, columns, **format_options)
    elif descriptor.is_tsv:
        rows = read_tsv_rows(local_path, columns, **format_options)
    elif descriptor.is_avro:
        rows = read_avro_rows(local_path, jsonpaths, columns, **format_options)
    else:
        raise UnsupportedFormatError(f"Cannot load '{descriptor.ext}' files without a warehouse COPY: {descriptor.url}")

    logger.debug("Read %d rows from %s", len(rows), descriptor.url)
    return rows
