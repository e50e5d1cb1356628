"""
Small helpers shared by the plugins: timestamps, JSON, text cleanup.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional, Union


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles bytes, CIDs, and other non-serializable objects."""
    def default(self, obj):
        if isinstance(obj, bytes):
            return obj.hex()
        if isinstance(obj, datetime):
            return obj.isoformat()
        if hasattr(obj, '__str__') and not isinstance(obj, (dict, list, tuple)):
            return str(obj)
        return super().default(obj)


def to_json(value: Any) -> Optional[str]:
    """Serialize for a jsonb parameter; None stays SQL NULL"""
    if value is None:
        return None
    return json.dumps(value, cls=SafeJSONEncoder)


def from_json(value: Any) -> Any:
    """asyncpg returns json/jsonb columns as text"""
    if value is None or not isinstance(value, (str, bytes)):
        return value
    return json.loads(value)


def sanitize_text(text: Optional[str]) -> Optional[str]:
    """Remove null bytes from text"""
    if not text:
        return None
    return text.replace('\x00', '')


def sanitize_required_text(text: Optional[str]) -> str:
    """Remove null bytes from required text"""
    if not text:
        return ''
    return text.replace('\x00', '')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime, or None if invalid"""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except (AttributeError, ValueError):
            return None
    if dt.tzinfo is None:
        # Naive timestamps are treated as UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_datetime(value: Union[str, datetime, None]) -> datetime:
    """
    Parse a record's self-reported createdAt.

    Unparseable values fall back to the epoch, so a record with a bogus
    timestamp sorts to the bottom of chronological feeds instead of the top.
    """
    return parse_datetime(value) or EPOCH


def parse_indexed_at(value: Union[str, datetime, None]) -> datetime:
    """Ingestion timestamp; defaults to now"""
    return parse_datetime(value) or utc_now()


def sort_at(created_at: datetime, indexed_at: datetime) -> datetime:
    """Feed ordering key: a record can never sort later than when we saw it"""
    return min(created_at, indexed_at)


def get_path(obj: Any, *keys: str) -> Any:
    """Walk nested dicts, returning None at the first missing key"""
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def blob_cid(blob: Any) -> Optional[str]:
    """Extract CID from blob reference"""
    if not blob:
        return None

    if isinstance(blob, str):
        return blob if blob != 'undefined' else None

    if isinstance(blob, dict):
        ref = blob.get('ref')
        if isinstance(ref, dict):
            link = ref.get('$link')
            return str(link) if link else None
        if isinstance(ref, str):
            return ref if ref != 'undefined' else None
        if ref is not None:
            # CID objects from a decoded CAR
            return str(ref)
        # Legacy blob format
        cid = blob.get('cid')
        return str(cid) if cid else None

    return None
