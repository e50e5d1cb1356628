"""
app.bsky.graph.listblock
"""

from datetime import datetime
from typing import Any, Dict, Optional

from ..nsid import Collection
from ..uris import AtUri
from .base import RecordPlugin, Row, require_uri, timestamps


class ListBlockPlugin(RecordPlugin):
    collection = Collection.LIST_BLOCK
    table = 'list_blocks'
    columns = ('uri', 'cid', 'creator', 'subject_uri', 'created_at', 'indexed_at', 'sort_at')
    duplicate_columns = ('creator', 'subject_uri')

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        require_uri(record.get('subject'), uri, 'subject')

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            'subject_uri': record['subject'],
            **timestamps(record, timestamp),
        }
