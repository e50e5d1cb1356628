import cbor2

from appview_indexer.cid import cid_for_bytes, cid_for_record, RAW_CODEC


def test_record_cid_is_base32_cidv1_dag_cbor():
    cid = cid_for_record({"$type": "app.bsky.feed.like", "createdAt": "2024-05-01T00:00:00Z"})
    # CIDv1 + dag-cbor + sha2-256 always renders with this prefix
    assert cid.startswith("bafyrei")
    assert cid == cid.lower()


def test_record_cid_ignores_key_order():
    a = {"text": "hi", "createdAt": "2024-05-01T00:00:00Z"}
    b = {"createdAt": "2024-05-01T00:00:00Z", "text": "hi"}
    assert cid_for_record(a) == cid_for_record(b)


def test_record_cid_changes_with_body():
    assert cid_for_record({"text": "hi"}) != cid_for_record({"text": "hello"})


def test_raw_codec_prefix():
    assert cid_for_bytes(b"blob", codec=RAW_CODEC).startswith("bafkrei")


def test_json_links_are_hashed_as_plain_maps():
    record = {"subject": {"uri": "at://did:plc:alice/app.bsky.feed.post/1", "cid": {"$link": "bafyreiabc"}}}
    assert cid_for_record(record) == cid_for_bytes(cbor2.dumps(record, canonical=True))
