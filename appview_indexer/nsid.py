"""
Lexicon collection identifiers for the records this indexer understands.
"""

from enum import Enum


class Collection(str, Enum):
    """Record kinds, keyed by their lexicon NSID"""

    POST = "app.bsky.feed.post"
    LIKE = "app.bsky.feed.like"
    REPOST = "app.bsky.feed.repost"
    FEED_GENERATOR = "app.bsky.feed.generator"
    THREAD_GATE = "app.bsky.feed.threadgate"
    POST_GATE = "app.bsky.feed.postgate"
    FOLLOW = "app.bsky.graph.follow"
    BLOCK = "app.bsky.graph.block"
    LIST = "app.bsky.graph.list"
    LIST_ITEM = "app.bsky.graph.listitem"
    LIST_BLOCK = "app.bsky.graph.listblock"
    STARTER_PACK = "app.bsky.graph.starterpack"
    VERIFICATION = "app.bsky.graph.verification"
    PROFILE = "app.bsky.actor.profile"
    LABELER = "app.bsky.labeler.service"

    def __str__(self) -> str:
        return self.value


# Embed and rich-text union members
EMBED_IMAGES = "app.bsky.embed.images"
EMBED_EXTERNAL = "app.bsky.embed.external"
EMBED_RECORD = "app.bsky.embed.record"
EMBED_RECORD_WITH_MEDIA = "app.bsky.embed.recordWithMedia"
EMBED_VIDEO = "app.bsky.embed.video"

FACET_MENTION = "app.bsky.richtext.facet#mention"
FACET_LINK = "app.bsky.richtext.facet#link"

THREADGATE_MENTION_RULE = "app.bsky.feed.threadgate#mentionRule"
THREADGATE_FOLLOWER_RULE = "app.bsky.feed.threadgate#followerRule"
THREADGATE_FOLLOWING_RULE = "app.bsky.feed.threadgate#followingRule"
THREADGATE_LIST_RULE = "app.bsky.feed.threadgate#listRule"

POSTGATE_DISABLE_RULE = "app.bsky.feed.postgate#disableRule"

SELF_RKEY = "self"
