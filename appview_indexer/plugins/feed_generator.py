"""
app.bsky.feed.generator
"""

from datetime import datetime
from typing import Any, Dict, Optional

from ..nsid import Collection
from ..uris import AtUri
from ..util import blob_cid, sanitize_required_text, sanitize_text, to_json
from .base import RecordPlugin, Row, require, timestamps


class FeedGeneratorPlugin(RecordPlugin):
    collection = Collection.FEED_GENERATOR
    table = 'feed_generators'
    columns = (
        'uri', 'cid', 'creator', 'feed_did', 'display_name', 'description', 'description_facets',
        'avatar_cid', 'created_at', 'indexed_at', 'sort_at',
    )

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        require(record.get('did'), uri, 'did')

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            'feed_did': record['did'],
            'display_name': sanitize_required_text(record.get('displayName')),
            'description': sanitize_text(record.get('description')),
            'description_facets': to_json(record.get('descriptionFacets')),
            'avatar_cid': blob_cid(record.get('avatar')),
            **timestamps(record, timestamp),
        }
