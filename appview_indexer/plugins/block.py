"""
app.bsky.graph.block
"""

from datetime import datetime
from typing import Any, Dict, Optional

from ..nsid import Collection
from ..uris import AtUri
from .base import RecordPlugin, Row, require, timestamps


class BlockPlugin(RecordPlugin):
    """Blocks are never notified and carry no counters"""

    collection = Collection.BLOCK
    table = 'blocks'
    columns = ('uri', 'cid', 'creator', 'subject_did', 'created_at', 'indexed_at', 'sort_at')
    duplicate_columns = ('creator', 'subject_did')

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        require(record.get('subject'), uri, 'subject')

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            'subject_did': record['subject'],
            **timestamps(record, timestamp),
        }
