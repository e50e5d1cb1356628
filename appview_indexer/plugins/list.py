"""
app.bsky.graph.list
"""

from datetime import datetime
from typing import Any, Dict, Optional

from ..nsid import Collection
from ..uris import AtUri
from ..util import blob_cid, sanitize_required_text, sanitize_text, to_json
from .base import RecordPlugin, Row, require, timestamps


class ListPlugin(RecordPlugin):
    collection = Collection.LIST
    table = 'lists'
    columns = (
        'uri', 'cid', 'creator', 'name', 'purpose', 'description', 'description_facets',
        'avatar_cid', 'created_at', 'indexed_at', 'sort_at',
    )

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        require(record.get('purpose'), uri, 'purpose')

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            'name': sanitize_required_text(record.get('name')),
            'purpose': record['purpose'],
            'description': sanitize_text(record.get('description')),
            'description_facets': to_json(record.get('descriptionFacets')),
            'avatar_cid': blob_cid(record.get('avatar')),
            **timestamps(record, timestamp),
        }
