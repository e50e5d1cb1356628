"""
app.bsky.feed.threadgate

A thread gate must share creator and rkey with the post it gates. The gated
post's ``has_thread_gate`` flag follows the gate's lifecycle.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from ..errors import InvalidRecordError
from ..nsid import Collection
from ..uris import AtUri
from ..util import normalize_datetime
from .base import RecordInput, RecordPlugin, Row, require_uri


class ThreadGatePlugin(RecordPlugin):
    collection = Collection.THREAD_GATE
    table = 'thread_gates'
    columns = ('uri', 'cid', 'creator', 'post_uri', 'created_at', 'indexed_at')
    duplicate_columns = ('post_uri',)

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        post_uri = AtUri.parse(require_uri(record.get('post'), uri, 'post'))
        if post_uri.host != uri.host or post_uri.rkey != uri.rkey:
            raise InvalidRecordError(
                "Creator and rkey of thread gate does not match its post", str(uri)
            )

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            'post_uri': record['post'],
            'created_at': normalize_datetime(record.get('createdAt')),
            'indexed_at': timestamp,
        }

    async def _mark_posts(self, conn: asyncpg.Connection, post_uris: List[str], gated: bool) -> None:
        if post_uris:
            await conn.execute(
                'UPDATE posts SET has_thread_gate = $2 WHERE uri = ANY($1::text[])',
                post_uris, gated,
            )

    async def insert(
        self,
        conn: asyncpg.Connection,
        uri: AtUri,
        cid: str,
        record: Dict[str, Any],
        timestamp: datetime,
    ) -> Optional[Row]:
        inserted = await super().insert(conn, uri, cid, record, timestamp)
        await self._mark_posts(conn, [record['post']], True)
        return inserted

    async def insert_bulk(self, conn: asyncpg.Connection, items: Sequence[RecordInput]) -> List[Row]:
        inserted = await super().insert_bulk(conn, items)
        await self._mark_posts(conn, [row['post_uri'] for row in inserted], True)
        return inserted

    async def delete(self, conn: asyncpg.Connection, uri: AtUri) -> Optional[Row]:
        deleted = await super().delete(conn, uri)
        if deleted:
            await self._mark_posts(conn, [deleted['post_uri']], False)
        return deleted
