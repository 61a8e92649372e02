from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime

from core.settings import DEFAULT_LISTING_MAX_WORKERS
from datasync.datehour import format_date_hour, full_dates, hours_between
from datasync.domain import FileDescriptor
from datasync.object_store import ObjectStore, as_prefix, join_url

logger = logging.getLogger(__name__)


class FileCatalog:
    """
    Lists the data files of a type within an hour range.

    Whole days are listed with one prefix each, concurrently; the hours left
    over at the edges of the range are listed one hour prefix at a time.
    Read-only: nothing in the object store is modified.
    """

    def __init__(self, store: ObjectStore, root_url: str, *, max_workers: int = DEFAULT_LISTING_MAX_WORKERS):
        self._store = store
        self._root_url = root_url
        self._max_workers = max_workers

    def list(self, type_name: str, start: datetime, end: datetime) -> list[FileDescriptor]:
        hours = hours_between(start, end)
        days = full_dates(hours)
        day_set = set(days)
        leftover_hours = [h for h in hours if h.date() not in day_set]

        found: list[FileDescriptor] = []
        lock = threading.Lock()

        def collect(prefix: str) -> None:
            descriptors = [FileDescriptor.from_url(url) for url in self._store.list(prefix)]
            with lock:
                found.extend(descriptors)

        if days:
            with ThreadPoolExecutor(max_workers=min(self._max_workers, len(days)), thread_name_prefix="listing") as executor:
                # list() forces every future so the first listing error propagates
                list(executor.map(collect, [self._day_prefix(type_name, d) for d in days]))

        for hour in leftover_hours:
            collect(self._hour_prefix(type_name, hour))

        files = sorted(
            (f for f in found if f.type == type_name and start <= f.timestamp <= end),
            key=lambda f: f.sort_key,
        )
        logger.debug(
            "Listed %d files for %s in %s - %s (%d full days, %d hours)",
            len(files), type_name, format_date_hour(start), format_date_hour(end), len(days), len(leftover_hours),
        )
        return files

    def list_new(
        self,
        type_name: str,
        start: datetime,
        end: datetime,
        ledger_ids: Iterable[str],
    ) -> list[FileDescriptor]:
        imported = set(ledger_ids)
        new_files = [f for f in self.list(type_name, start, end) if f.id not in imported]
        logger.info("Found %d new files for %s to import", len(new_files), type_name)
        return new_files

    def _day_prefix(self, type_name: str, day: date) -> str:
        return as_prefix(join_url(self._root_url, type_name, f"d={day:%Y-%m-%d}"))

    def _hour_prefix(self, type_name: str, hour: datetime) -> str:
        return as_prefix(join_url(self._root_url, type_name, f"d={hour:%Y-%m-%d}", f"h={hour:%H}"))
