"""Tests for common utilities."""

from datetime import datetime, timedelta, timezone

import pytest

from deployctl.core.utils import (
    format_duration,
    format_timestamp,
    merge_dicts,
    parse_duration,
    parse_timestamp,
)


class TestParseDuration:
    """Tests for parse_duration."""

    def test_units(self):
        assert parse_duration("500ms") == timedelta(milliseconds=500)
        assert parse_duration("30s") == timedelta(seconds=30)
        assert parse_duration("5m") == timedelta(minutes=5)
        assert parse_duration("2h") == timedelta(hours=2)

    def test_combined(self):
        assert parse_duration("1h30m") == timedelta(hours=1, minutes=30)

    @pytest.mark.parametrize("value", ["", "10", "5x", "1h 30q"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestFormatDuration:
    """Tests for format_duration."""

    def test_seconds(self):
        assert format_duration(30) == "30.0s"
        assert format_duration(59.9) == "59.9s"

    def test_minutes(self):
        assert format_duration(90) == "1.5m"

    def test_hours(self):
        assert format_duration(7200) == "2.0h"


class TestTimestamps:
    """Tests for RFC 3339 timestamps."""

    def test_format_utc(self):
        value = datetime(2026, 10, 19, 12, 30, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2026-10-19T12:30:00Z"

    def test_format_converts_offset(self):
        value = datetime(2026, 10, 19, 14, 30, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(value) == "2026-10-19T12:30:00Z"

    def test_parse_round_trip(self):
        value = datetime(2026, 10, 19, 12, 30, 5, 123456, tzinfo=timezone.utc)
        assert parse_timestamp(format_timestamp(value)) == value

    def test_parse_naive_is_utc(self):
        assert parse_timestamp(datetime(2026, 1, 1)).tzinfo == timezone.utc


class TestMergeDicts:
    """Tests for merge_dicts."""

    def test_nested_merge(self):
        base = {"ssh": {"user": "root", "port": 22}, "hosts": ["a"]}
        override = {"ssh": {"port": 2222}, "hosts": ["b"]}
        assert merge_dicts(base, override) == {"ssh": {"user": "root", "port": 2222}, "hosts": ["b"]}

    def test_base_unchanged(self):
        base = {"ssh": {"port": 22}}
        merge_dicts(base, {"ssh": {"port": 2222}})
        assert base == {"ssh": {"port": 22}}
