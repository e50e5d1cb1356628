"""
app.bsky.feed.repost
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from .. import aggregates
from ..bulk import BulkWriter
from ..notifications import Notification, NotificationChanges
from ..nsid import Collection
from ..uris import AtUri
from .base import RecordInput, RecordPlugin, Row, optional_ref, retract_unless_replaced, subject_ref, timestamps
from .like import via_notifications

FEED_ITEM_COLUMNS = ('uri', 'cid', 'type', 'post_uri', 'originator_did', 'sort_at')


def feed_item_values(row: Row, item_type: str, post_uri: str) -> tuple:
    return (row['uri'], row['cid'], item_type, post_uri, row['creator'], row['sort_at'])


class RepostPlugin(RecordPlugin):
    collection = Collection.REPOST
    table = 'reposts'
    columns = (
        'uri', 'cid', 'creator', 'subject', 'subject_cid', 'via', 'via_cid',
        'created_at', 'indexed_at', 'sort_at',
    )
    duplicate_columns = ('creator', 'subject')
    has_aggregates = True

    def __init__(self):
        super().__init__()
        self.feed_writer = BulkWriter('feed_items', FEED_ITEM_COLUMNS, returning=False)

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        subject_ref(record, uri)

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        subject, subject_cid = subject_ref(record, uri)
        via, via_cid = optional_ref(record, 'via')
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            'subject': subject,
            'subject_cid': subject_cid,
            'via': via,
            'via_cid': via_cid,
            **timestamps(record, timestamp),
        }

    async def insert(
        self,
        conn: asyncpg.Connection,
        uri: AtUri,
        cid: str,
        record: Dict[str, Any],
        timestamp: datetime,
    ) -> Optional[Row]:
        inserted = await super().insert(conn, uri, cid, record, timestamp)
        if inserted:
            # Reposts show up in the reposter's feed
            await conn.execute(
                """
                INSERT INTO feed_items (uri, cid, type, post_uri, originator_did, sort_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (uri) DO NOTHING
                """,
                *feed_item_values(inserted, 'repost', inserted['subject']),
            )
        return inserted

    async def insert_bulk(self, conn: asyncpg.Connection, items: Sequence[RecordInput]) -> List[Row]:
        inserted = await super().insert_bulk(conn, items)
        await self.feed_writer.write(
            conn, [feed_item_values(row, 'repost', row['subject']) for row in inserted]
        )
        return inserted

    async def delete(self, conn: asyncpg.Connection, uri: AtUri) -> Optional[Row]:
        deleted = await super().delete(conn, uri)
        await conn.execute('DELETE FROM feed_items WHERE uri = $1', str(uri))
        return deleted

    def notifications_for_insert(self, row: Row) -> List[Notification]:
        return via_notifications(row, 'repost', 'repost-via-repost')

    def notifications_for_delete(self, deleted: Row, replaced_by: Optional[Row]) -> NotificationChanges:
        return retract_unless_replaced(deleted, replaced_by)

    async def update_aggregates_bulk(self, conn: asyncpg.Connection, rows: List[Row]) -> None:
        await aggregates.update_repost_counts(conn, self.aggregate_subjects(rows))

    def aggregate_subjects(self, rows: List[Row]) -> List[str]:
        return [row['subject'] for row in rows]
