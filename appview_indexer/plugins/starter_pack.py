"""
app.bsky.graph.starterpack
"""

from datetime import datetime
from typing import Any, Dict, Optional

from ..nsid import Collection
from ..uris import AtUri
from ..util import sanitize_required_text
from .base import RecordPlugin, Row, timestamps


class StarterPackPlugin(RecordPlugin):
    collection = Collection.STARTER_PACK
    table = 'starter_packs'
    columns = ('uri', 'cid', 'creator', 'name', 'created_at', 'indexed_at', 'sort_at')

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            'name': sanitize_required_text(record.get('name')),
            **timestamps(record, timestamp),
        }
