"""
app.bsky.feed.like
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from .. import aggregates
from ..notifications import Notification, NotificationChanges
from ..nsid import Collection
from ..uris import AtUri
from .base import RecordPlugin, Row, optional_ref, retract_unless_replaced, subject_ref, timestamps


def via_notifications(row: Row, reason: str, via_reason: str) -> List[Notification]:
    """
    Notify the subject's author and, for interactions made through a repost,
    the reposter. Each recipient is skipped when they are the actor.
    """
    notifs = []
    subject = AtUri.parse(row['subject'])
    # prevent self-notifications
    if subject.host == row['creator']:
        return notifs

    notifs.append(Notification(
        did=subject.host,
        author=row['creator'],
        reason=reason,
        reason_subject=str(subject),
        record_uri=row['uri'],
        record_cid=row['cid'],
        sort_at=row['sort_at'],
    ))

    if row.get('via'):
        via = AtUri.parse(row['via'])
        if via.host != row['creator']:
            notifs.append(Notification(
                did=via.host,
                author=row['creator'],
                reason=via_reason,
                reason_subject=str(via),
                record_uri=row['uri'],
                record_cid=row['cid'],
                sort_at=row['sort_at'],
            ))
    return notifs


class LikePlugin(RecordPlugin):
    collection = Collection.LIKE
    table = 'likes'
    columns = (
        'uri', 'cid', 'creator', 'subject', 'subject_cid', 'via', 'via_cid',
        'created_at', 'indexed_at', 'sort_at',
    )
    duplicate_columns = ('creator', 'subject')
    has_aggregates = True

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

    def notifications_for_insert(self, row: Row) -> List[Notification]:
        return via_notifications(row, 'like', 'like-via-repost')

    def notifications_for_delete(self, deleted: Row, replaced_by: Optional[Row]) -> NotificationChanges:
        return retract_unless_replaced(deleted, replaced_by)

    async def update_aggregates_bulk(self, conn: asyncpg.Connection, rows: List[Row]) -> None:
        await aggregates.update_like_counts(conn, self.aggregate_subjects(rows))

    def aggregate_subjects(self, rows: List[Row]) -> List[str]:
        return [row['subject'] for row in rows]
