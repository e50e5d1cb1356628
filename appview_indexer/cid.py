"""
Content identifiers for record bodies.

A stable content hash in CIDv1 form: canonical CBOR of the JSON record,
sha2-256 multihash, base32 multibase ("bafyrei..."). JSON-form links and
bytes (``$link`` / ``$bytes`` maps) are hashed as plain maps, so this is
not the CID a repository would compute for the same record. The upstream
repository normally supplies the CID; this only covers records imported
from files and fixtures.
"""

import base64
import hashlib
from typing import Any

import cbor2


CID_VERSION = 1
DAG_CBOR_CODEC = 0x71
RAW_CODEC = 0x55
SHA2_256 = 0x12


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def encode_record(record: Any) -> bytes:
    """Deterministic CBOR encoding (length-first map key ordering)"""
    return cbor2.dumps(record, canonical=True)


def cid_for_bytes(data: bytes, codec: int = DAG_CBOR_CODEC) -> str:
    digest = hashlib.sha256(data).digest()
    raw = (
        _varint(CID_VERSION)
        + _varint(codec)
        + _varint(SHA2_256)
        + _varint(len(digest))
        + digest
    )
    return 'b' + base64.b32encode(raw).decode('ascii').lower().rstrip('=')


def cid_for_record(record: Any) -> str:
    """CID of a record body; changes whenever the body changes"""
    return cid_for_bytes(encode_record(record))
