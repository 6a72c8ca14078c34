from datetime import datetime, timedelta, timezone

from newsrelay.utils import content_hash, isoformat_utc, parse_iso


def test_parse_iso_normalizes_to_utc():
    assert parse_iso("2025-03-01T08:00:00Z") == datetime(2025, 3, 1, 8, tzinfo=timezone.utc)
    assert parse_iso("2025-03-01T09:00:00+01:00") == datetime(2025, 3, 1, 8, tzinfo=timezone.utc)
    assert parse_iso("2025-03-01T08:00:00") == datetime(2025, 3, 1, 8, tzinfo=timezone.utc)


def test_parse_iso_rejects_garbage():
    assert parse_iso(None) is None
    assert parse_iso("") is None
    assert parse_iso("yesterday") is None


def test_isoformat_utc():
    local = datetime(2025, 3, 1, 9, tzinfo=timezone(timedelta(hours=1)))
    assert isoformat_utc(local) == "2025-03-01T08:00:00+00:00"
    assert isoformat_utc(datetime(2025, 3, 1, 8)) == "2025-03-01T08:00:00+00:00"
    assert isoformat_utc(None) is None


def test_content_hash_is_stable():
    assert content_hash("headline") == content_hash("headline")
    assert content_hash("headline") != content_hash("Headline")
