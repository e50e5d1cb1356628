from datetime import datetime, timedelta, timezone

from appview_indexer.util import (
    EPOCH,
    blob_cid,
    from_json,
    get_path,
    normalize_datetime,
    parse_datetime,
    parse_indexed_at,
    sanitize_required_text,
    sanitize_text,
    sort_at,
    to_json,
)


def test_parse_datetime_zulu():
    dt = parse_datetime("2024-05-01T12:00:00.000Z")
    assert dt == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_parse_datetime_converts_offsets_to_utc():
    dt = parse_datetime("2024-05-01T14:00:00+02:00")
    assert dt == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert dt.utcoffset() == timedelta(0)


def test_naive_datetimes_are_utc():
    dt = parse_datetime(datetime(2024, 5, 1, 12, 0))
    assert dt.tzinfo is not None


def test_bogus_created_at_falls_back_to_epoch():
    assert parse_datetime("yesterday") is None
    assert normalize_datetime("yesterday") == EPOCH
    assert normalize_datetime(None) == EPOCH


def test_indexed_at_defaults_to_now():
    before = datetime.now(timezone.utc)
    assert parse_indexed_at(None) >= before


def test_sort_at_is_never_after_indexed_at():
    indexed = datetime(2024, 5, 1, tzinfo=timezone.utc)
    future = indexed + timedelta(days=30)
    past = indexed - timedelta(days=1)
    assert sort_at(future, indexed) == indexed
    assert sort_at(past, indexed) == past


def test_sanitize_text_strips_null_bytes():
    assert sanitize_text("a\x00b") == "ab"
    assert sanitize_text("") is None
    assert sanitize_required_text(None) == ''


def test_json_helpers():
    assert to_json(None) is None
    assert from_json(to_json({"a": [1, 2]})) == {"a": [1, 2]}
    assert from_json({"already": "decoded"}) == {"already": "decoded"}


def test_get_path():
    obj = {"reply": {"root": {"uri": "at://x"}}}
    assert get_path(obj, "reply", "root", "uri") == "at://x"
    assert get_path(obj, "reply", "parent", "uri") is None
    assert get_path({"reply": "oops"}, "reply", "root") is None


def test_blob_cid_formats():
    assert blob_cid({"$type": "blob", "ref": {"$link": "bafkrei1"}}) == "bafkrei1"
    assert blob_cid({"ref": "bafkrei2"}) == "bafkrei2"
    assert blob_cid({"cid": "bafkrei3"}) == "bafkrei3"
    assert blob_cid("undefined") is None
    assert blob_cid(None) is None
