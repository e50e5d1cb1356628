"""
app.bsky.graph.listitem
"""

from datetime import datetime
from typing import Any, Dict, Optional

from ..errors import InvalidRecordError
from ..nsid import Collection
from ..uris import AtUri
from .base import RecordPlugin, Row, require, require_uri, timestamps


class ListItemPlugin(RecordPlugin):
    collection = Collection.LIST_ITEM
    table = 'list_items'
    columns = ('uri', 'cid', 'creator', 'subject_did', 'list_uri', 'created_at', 'indexed_at', 'sort_at')
    duplicate_columns = ('list_uri', 'subject_did')

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        require(record.get('subject'), uri, 'subject')
        list_uri = AtUri.parse(require_uri(record.get('list'), uri, 'list'))
        if list_uri.host != uri.host:
            raise InvalidRecordError(
                "Creator of listitem does not match creator of list", str(uri)
            )

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            'subject_did': record['subject'],
            'list_uri': record['list'],
            **timestamps(record, timestamp),
        }
