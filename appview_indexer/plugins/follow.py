"""
app.bsky.graph.follow
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from .. import aggregates
from ..notifications import Notification, NotificationChanges
from ..nsid import Collection
from ..uris import AtUri
from .base import RecordPlugin, Row, require, retract_unless_replaced, timestamps


class FollowPlugin(RecordPlugin):
    collection = Collection.FOLLOW
    table = 'follows'
    columns = ('uri', 'cid', 'creator', 'subject_did', 'created_at', 'indexed_at', 'sort_at')
    duplicate_columns = ('creator', 'subject_did')
    has_aggregates = True

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

    def notifications_for_insert(self, row: Row) -> List[Notification]:
        return [
            Notification(
                did=row['subject_did'],
                author=row['creator'],
                reason='follow',
                reason_subject=None,
                record_uri=row['uri'],
                record_cid=row['cid'],
                sort_at=row['sort_at'],
            )
        ]

    def notifications_for_delete(self, deleted: Row, replaced_by: Optional[Row]) -> NotificationChanges:
        return retract_unless_replaced(deleted, replaced_by)

    async def update_aggregates_bulk(self, conn: asyncpg.Connection, rows: List[Row]) -> None:
        await aggregates.update_followers_counts(conn, [row['subject_did'] for row in rows])
        await aggregates.update_follows_counts(conn, [row['creator'] for row in rows])

    def aggregate_subjects(self, rows: List[Row]) -> List[str]:
        return [row['subject_did'] for row in rows] + [row['creator'] for row in rows]
