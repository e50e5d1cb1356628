"""
app.bsky.labeler.service
"""

from datetime import datetime
from typing import Any, Dict, Optional

from ..nsid import SELF_RKEY, Collection
from ..uris import AtUri
from .base import RecordPlugin, Row, timestamps


class LabelerPlugin(RecordPlugin):
    collection = Collection.LABELER
    table = 'labelers'
    columns = ('uri', 'cid', 'creator', 'created_at', 'indexed_at', 'sort_at')

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        # One labeler service per actor
        if uri.rkey != SELF_RKEY:
            return None
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            **timestamps(record, timestamp),
        }
