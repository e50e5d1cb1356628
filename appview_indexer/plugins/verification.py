"""
app.bsky.graph.verification

The one record kind whose deletion is itself notified: the subject is told
the verification was revoked.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..notifications import Notification, NotificationChanges
from ..nsid import Collection
from ..uris import AtUri
from ..util import sanitize_required_text, utc_now
from .base import RecordPlugin, Row, require, timestamps


class VerificationPlugin(RecordPlugin):
    collection = Collection.VERIFICATION
    table = 'verifications'
    columns = (
        'uri', 'cid', 'rkey', 'creator', 'subject', 'handle', 'display_name',
        'created_at', 'indexed_at', 'sort_at',
    )
    duplicate_columns = ('creator', 'subject')

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        require(record.get('subject'), uri, 'subject')

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        return {
            'uri': str(uri),
            'cid': cid,
            'rkey': uri.rkey,
            'creator': uri.host,
            'subject': record['subject'],
            'handle': sanitize_required_text(record.get('handle')),
            'display_name': sanitize_required_text(record.get('displayName')),
            **timestamps(record, timestamp),
        }

    def notifications_for_insert(self, row: Row) -> List[Notification]:
        return [
            Notification(
                did=row['subject'],
                author=row['creator'],
                reason='verified',
                reason_subject=None,
                record_uri=row['uri'],
                record_cid=row['cid'],
                sort_at=row['sort_at'],
            )
        ]

    def notifications_for_delete(self, deleted: Row, replaced_by: Optional[Row]) -> NotificationChanges:
        # The verified notification stays; revocation is a new event
        return NotificationChanges(
            notifications=[
                Notification(
                    did=deleted['subject'],
                    author=deleted['creator'],
                    reason='unverified',
                    reason_subject=None,
                    record_uri=deleted['uri'],
                    record_cid=deleted['cid'],
                    sort_at=utc_now(),
                )
            ],
            to_delete=[],
        )
