"""
app.bsky.actor.profile
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..notifications import Notification
from ..nsid import SELF_RKEY, Collection
from ..uris import AtUri
from ..util import blob_cid, parse_datetime, sanitize_text
from .base import RecordPlugin, Row, optional_ref


class ProfilePlugin(RecordPlugin):
    """Only the actor's ``self`` record is indexed; other rkeys are ignored"""

    collection = Collection.PROFILE
    table = 'profiles'
    columns = (
        'uri', 'cid', 'creator', 'display_name', 'description', 'avatar_cid', 'banner_cid',
        'joined_via_starter_pack_uri', 'pinned_post', 'pinned_post_cid', 'created_at', 'indexed_at',
    )

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        if uri.rkey != SELF_RKEY:
            return None
        starter_pack, _ = optional_ref(record, 'joinedViaStarterPack')
        pinned_post, pinned_post_cid = optional_ref(record, 'pinnedPost')
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            'display_name': sanitize_text(record.get('displayName')),
            'description': sanitize_text(record.get('description')),
            'avatar_cid': blob_cid(record.get('avatar')),
            'banner_cid': blob_cid(record.get('banner')),
            'joined_via_starter_pack_uri': starter_pack,
            'pinned_post': pinned_post,
            'pinned_post_cid': pinned_post_cid,
            # Profiles commonly omit createdAt
            'created_at': parse_datetime(record.get('createdAt')) or timestamp,
            'indexed_at': timestamp,
        }

    def notifications_for_insert(self, row: Row) -> List[Notification]:
        starter_pack = row.get('joined_via_starter_pack_uri')
        if not starter_pack:
            return []
        host = AtUri.parse(starter_pack).host
        if host == row['creator']:
            return []
        return [
            Notification(
                did=host,
                author=row['creator'],
                reason='starterpack-joined',
                reason_subject=starter_pack,
                record_uri=row['uri'],
                record_cid=row['cid'],
                sort_at=row['indexed_at'],
            )
        ]
