"""Time helpers, correlation scopes and settings parsing"""
from datetime import datetime, timedelta, timezone

from approval_engine.config.settings import Settings
from approval_engine.utils.logger import correlation_scope, get_correlation_id
from approval_engine.utils.time import ensure_utc, format_iso, is_older_than, parse_iso


def test_parse_and_format_iso():
    parsed = parse_iso("2024-03-01T08:30:00+02:00")

    assert parsed == datetime(2024, 3, 1, 6, 30, tzinfo=timezone.utc)
    assert format_iso(parsed) == "2024-03-01T06:30:00Z"
    assert parse_iso("2024-03-01T06:30:00").tzinfo == timezone.utc


def test_naive_datetimes_are_utc():
    assert ensure_utc(datetime(2024, 1, 1)) == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert ensure_utc(None) is None


def test_is_older_than_is_strict():
    now = datetime(2024, 1, 10, tzinfo=timezone.utc)

    assert is_older_than(now - timedelta(days=5), 5, now=now) is False
    assert is_older_than(now - timedelta(days=5, microseconds=1), 5, now=now) is True
    assert is_older_than(datetime(2024, 1, 1), 5, now=now) is True


def test_correlation_scope_nesting():
    assert get_correlation_id() is None

    with correlation_scope() as outer:
        assert outer.startswith("COR-")
        with correlation_scope() as inner:
            assert inner == outer
        with correlation_scope("COR-explicit") as explicit:
            assert explicit == "COR-explicit"
        assert get_correlation_id() == outer

    assert get_correlation_id() is None


def test_role_lists_are_parsed():
    configured = Settings(admin_override_roles=" admin, ,directeur ", cancel_roles="")

    assert configured.admin_override_roles_list == ["admin", "directeur"]
    assert configured.cancel_roles_list == []
