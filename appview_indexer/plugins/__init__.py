"""
Plugin registry: one plugin per record collection.
"""

from typing import Dict, Iterator, List, Union

from ..errors import UnknownCollectionError
from ..nsid import Collection
from ..uris import AtUri
from .base import RecordInput, RecordPlugin
from .block import BlockPlugin
from .feed_generator import FeedGeneratorPlugin
from .follow import FollowPlugin
from .labeler import LabelerPlugin
from .like import LikePlugin
from .list import ListPlugin
from .list_block import ListBlockPlugin
from .list_item import ListItemPlugin
from .post import IndexedPost, PostPlugin
from .post_gate import PostGatePlugin
from .profile import ProfilePlugin
from .repost import RepostPlugin
from .starter_pack import StarterPackPlugin
from .thread_gate import ThreadGatePlugin
from .verification import VerificationPlugin

# Bulk ingestion order: actors and graph edges first, then posts, then
# records that point at posts
BULK_ORDER: List[Collection] = [
    Collection.PROFILE,
    Collection.FOLLOW,
    Collection.BLOCK,
    Collection.LIST,
    Collection.LIST_ITEM,
    Collection.LIST_BLOCK,
    Collection.STARTER_PACK,
    Collection.FEED_GENERATOR,
    Collection.LABELER,
    Collection.VERIFICATION,
    Collection.POST,
    Collection.POST_GATE,
    Collection.THREAD_GATE,
    Collection.LIKE,
    Collection.REPOST,
]


class PluginRegistry:
    """Dispatches a record kind to its plugin"""

    def __init__(self, reply_notif_depth: int = 5):
        plugins: List[RecordPlugin] = [
            PostPlugin(reply_notif_depth=reply_notif_depth),
            LikePlugin(),
            RepostPlugin(),
            FollowPlugin(),
            BlockPlugin(),
            ListPlugin(),
            ListItemPlugin(),
            ListBlockPlugin(),
            ProfilePlugin(),
            FeedGeneratorPlugin(),
            LabelerPlugin(),
            StarterPackPlugin(),
            ThreadGatePlugin(),
            PostGatePlugin(),
            VerificationPlugin(),
        ]
        self._plugins: Dict[Collection, RecordPlugin] = {p.collection: p for p in plugins}

    def get(self, collection: Union[str, Collection]) -> RecordPlugin:
        try:
            return self._plugins[Collection(collection)]
        except (KeyError, ValueError):
            raise UnknownCollectionError(str(collection))

    def for_uri(self, uri: Union[str, AtUri]) -> RecordPlugin:
        parsed = uri if isinstance(uri, AtUri) else AtUri.parse(uri)
        return self.get(parsed.collection)

    def supports(self, collection: str) -> bool:
        try:
            self.get(collection)
        except UnknownCollectionError:
            return False
        return True

    def in_bulk_order(self) -> Iterator[RecordPlugin]:
        for collection in BULK_ORDER:
            yield self._plugins[collection]

    def __iter__(self) -> Iterator[RecordPlugin]:
        return iter(self._plugins.values())

    def __len__(self) -> int:
        return len(self._plugins)


__all__ = [
    'BULK_ORDER',
    'IndexedPost',
    'PluginRegistry',
    'RecordInput',
    'RecordPlugin',
]
