"""
app.bsky.feed.postgate

Post gates have no table of their own. The processor stores every record
body in ``records``, which is where quote checks read the gate from, so
this plugin only validates the gate and indexes nothing further.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from ..errors import InvalidRecordError
from ..nsid import Collection
from ..uris import AtUri
from .base import RecordInput, RecordPlugin, Row, require_uri


class PostGatePlugin(RecordPlugin):
    collection = Collection.POST_GATE

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        post_uri = AtUri.parse(require_uri(record.get('post'), uri, 'post'))
        if post_uri.host != uri.host or post_uri.rkey != uri.rkey:
            raise InvalidRecordError(
                "Creator and rkey of post gate does not match its post", str(uri)
            )

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        return None

    async def insert(
        self,
        conn: asyncpg.Connection,
        uri: AtUri,
        cid: str,
        record: Dict[str, Any],
        timestamp: datetime,
    ) -> Optional[Row]:
        self.validate(uri, record)
        return None

    async def insert_bulk(self, conn: asyncpg.Connection, items: Sequence[RecordInput]) -> List[Row]:
        for item in items:
            self.validate(item.uri, item.record)
        return []

    async def delete(self, conn: asyncpg.Connection, uri: AtUri) -> Optional[Row]:
        return None
