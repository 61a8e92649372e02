from datetime import date, datetime, timedelta

import pytest

from datasync.datehour import (
    Chunking,
    Granularity,
    TimeChunk,
    bucket_key,
    bucket_start,
    chunk_end,
    chunk_start,
    full_dates,
    hours_between,
    parse_date_hour,
    shift_buckets,
)


class TestParsing:
    def test_parse_and_format(self):
        assert parse_date_hour("2024-01-02:03") == datetime(2024, 1, 2, 3)
        assert str(TimeChunk(parse_date_hour("2024-01-02:03"), parse_date_hour("2024-01-02:05"))) == "2024-01-02:03 - 2024-01-02:05"

    def test_invalid_date_hour(self):
        with pytest.raises(ValueError):
            parse_date_hour("2024-01-02 03")

    def test_negative_range_rejected(self):
        with pytest.raises(ValueError):
            TimeChunk(datetime(2024, 1, 2, 5), datetime(2024, 1, 2, 4))

    def test_chunking_names(self):
        assert Chunking.parse("Daily") is Chunking.DAILY
        assert Chunking.parse("disable") is Chunking.DISABLED
        with pytest.raises(ValueError):
            Chunking.parse("Yearly")


class TestHours:
    def test_hours_between_is_inclusive(self):
        hours = hours_between(datetime(2024, 1, 1, 22), datetime(2024, 1, 2, 1))
        assert hours == [
            datetime(2024, 1, 1, 22),
            datetime(2024, 1, 1, 23),
            datetime(2024, 1, 2, 0),
            datetime(2024, 1, 2, 1),
        ]

    def test_full_dates_only_counts_complete_days(self):
        hours = hours_between(datetime(2024, 1, 1, 5), datetime(2024, 1, 3, 23))
        assert full_dates(hours) == [date(2024, 1, 2), date(2024, 1, 3)]


class TestSplitting:
    def test_disabled_keeps_single_chunk(self):
        chunk = TimeChunk(datetime(2024, 1, 1, 5), datetime(2024, 1, 3, 2))
        assert chunk.split(Chunking.DISABLED) == [chunk]

    def test_daily_split_respects_partial_edges(self):
        chunks = TimeChunk(datetime(2024, 1, 1, 22), datetime(2024, 1, 3, 2)).split(Chunking.DAILY)
        assert chunks == [
            TimeChunk(datetime(2024, 1, 1, 22), datetime(2024, 1, 1, 23)),
            TimeChunk(datetime(2024, 1, 2, 0), datetime(2024, 1, 2, 23)),
            TimeChunk(datetime(2024, 1, 3, 0), datetime(2024, 1, 3, 2)),
        ]

    def test_hourly_split(self):
        chunks = TimeChunk(datetime(2024, 1, 1, 22), datetime(2024, 1, 2, 0)).split(Chunking.HOURLY)
        assert [c.start for c in chunks] == hours_between(datetime(2024, 1, 1, 22), datetime(2024, 1, 2, 0))
        assert all(c.start == c.end for c in chunks)

    def test_weekly_split_starts_on_monday(self):
        # 2024-01-03 is a Wednesday, 2024-01-08 a Monday
        chunks = TimeChunk(datetime(2024, 1, 3, 0), datetime(2024, 1, 9, 0)).split(Chunking.WEEKLY)
        assert [c.start for c in chunks] == [datetime(2024, 1, 3), datetime(2024, 1, 8)]
        assert chunks[0].end == datetime(2024, 1, 7, 23)

    def test_monthly_split(self):
        chunks = TimeChunk(datetime(2024, 1, 20), datetime(2024, 3, 1, 5)).split(Chunking.MONTHLY)
        assert [c.start for c in chunks] == [datetime(2024, 1, 20), datetime(2024, 2, 1), datetime(2024, 3, 1)]
        assert chunks[1].end == datetime(2024, 2, 29, 23)

    def test_chunks_cover_range_without_gaps(self):
        chunk = TimeChunk(datetime(2023, 12, 30, 7), datetime(2024, 2, 2, 3))
        for chunking in (Chunking.HOURLY, Chunking.DAILY, Chunking.WEEKLY, Chunking.MONTHLY):
            chunks = chunk.split(chunking)
            assert chunks[0].start == chunk.start
            assert chunks[-1].end == chunk.end
            for previous, current in zip(chunks, chunks[1:]):
                assert previous.end + timedelta(hours=1) == current.start


class TestSchedulerWindow:
    now = datetime(2024, 1, 10, 12, 34)  # a Wednesday

    def test_hourly_window(self):
        assert chunk_start(self.now, 3, Chunking.HOURLY) == datetime(2024, 1, 10, 9)
        assert chunk_end(self.now, Chunking.HOURLY) == datetime(2024, 1, 10, 12)

    def test_disabled_counts_hours(self):
        assert chunk_start(self.now, 3, Chunking.DISABLED) == datetime(2024, 1, 10, 9)

    def test_daily_window(self):
        assert chunk_start(self.now, 2, Chunking.DAILY) == datetime(2024, 1, 8)
        assert chunk_end(self.now, Chunking.DAILY) == datetime(2024, 1, 10, 23)

    def test_weekly_window(self):
        assert chunk_start(self.now, 1, Chunking.WEEKLY) == datetime(2024, 1, 1)
        assert chunk_end(self.now, Chunking.WEEKLY) == datetime(2024, 1, 14, 23)

    def test_monthly_window(self):
        assert chunk_start(self.now, 1, Chunking.MONTHLY) == datetime(2023, 12, 1)
        assert chunk_end(self.now, Chunking.MONTHLY) == datetime(2024, 1, 31, 23)


class TestBuckets:
    def test_bucket_keys(self):
        hour = datetime(2024, 1, 10, 7)
        assert bucket_key(hour, Granularity.HOURLY) == "2024011007"
        assert bucket_key(hour, Granularity.DAILY) == "20240110"
        assert bucket_key(hour, Granularity.WEEKLY) == "202402"
        assert bucket_key(hour, Granularity.MONTHLY) == "202401"
        assert bucket_key(hour, Granularity.YEARLY) == "2024"

    def test_iso_week_key_at_year_boundary(self):
        # 2024-12-30 belongs to ISO week 1 of 2025
        assert bucket_key(datetime(2024, 12, 30), Granularity.WEEKLY) == "202501"

    def test_bucket_start_and_shift(self):
        hour = datetime(2024, 3, 31, 7)
        assert bucket_start(hour, Granularity.MONTHLY) == datetime(2024, 3, 1)
        assert shift_buckets(datetime(2024, 3, 1), Granularity.MONTHLY, -2) == datetime(2024, 1, 1)
        assert shift_buckets(datetime(2024, 1, 1), Granularity.YEARLY, 1) == datetime(2025, 1, 1)
