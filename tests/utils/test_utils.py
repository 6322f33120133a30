# -*- coding: utf-8 -*-
"""
Tests for logging and timestamp helpers.
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from utils.datetime_utils import parse_datetime, to_isoformat
from utils.logger import PackageContextFilter, get_logger, package_context


def _record():
    return logging.LogRecord("trrcms.test", logging.INFO, __file__, 1, "message", None, None)


class TestPackageContext:
    """Test package tagging of log records."""

    def test_default_tag(self):
        record = _record()
        PackageContextFilter().filter(record)
        assert record.package == "-"

    def test_tag_inside_context(self):
        record = _record()
        with package_context("pkg-1"):
            PackageContextFilter().filter(record)
        assert record.package == "pkg-1"

        after = _record()
        PackageContextFilter().filter(after)
        assert after.package == "-"

    def test_child_logger_name(self):
        assert get_logger("services.commit_service").name == "trrcms.services.commit_service"


class TestTimestamps:
    """Test naive-UTC serialization."""

    def test_aware_values_are_normalized(self):
        local = datetime(2026, 1, 10, 10, 0, tzinfo=timezone(timedelta(hours=3)))
        assert to_isoformat(local) == "2026-01-10T07:00:00"

    def test_trailing_z(self):
        assert parse_datetime("2026-01-10T08:00:00Z") == datetime(2026, 1, 10, 8, 0)

    def test_empty_values(self):
        assert parse_datetime("") is None
        assert parse_datetime(None) is None
        assert to_isoformat(None) is None

    def test_malformed(self):
        with pytest.raises(ValueError):
            parse_datetime("yesterday")
