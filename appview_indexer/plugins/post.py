"""
app.bsky.feed.post

Besides the post row and its feed item, a post owns embed rows, quote rows
and cached thread-validity flags. Side effects only run for posts that were
newly inserted, so re-ingesting a post never repeats them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AbstractSet, Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from .. import aggregates, threads
from ..bulk import BulkWriter
from ..errors import InvalidRecordError
from ..notifications import Notification, NotificationChanges
from ..nsid import (
    EMBED_EXTERNAL,
    EMBED_IMAGES,
    EMBED_RECORD,
    EMBED_RECORD_WITH_MEDIA,
    EMBED_VIDEO,
    FACET_LINK,
    FACET_MENTION,
    Collection,
)
from ..uris import AtUri, safe_collection_of
from ..util import blob_cid, get_path, sanitize_required_text, sanitize_text, to_json
from .base import RecordInput, RecordPlugin, Row, require_uri, timestamps
from .repost import FEED_ITEM_COLUMNS, feed_item_values

logger = logging.getLogger(__name__)

POST_COLUMNS = (
    'uri', 'cid', 'creator', 'text', 'reply_root', 'reply_root_cid', 'reply_parent',
    'reply_parent_cid', 'langs', 'tags', 'created_at', 'indexed_at', 'sort_at',
)
IMAGE_COLUMNS = ('post_uri', 'position', 'image_cid', 'alt')
EXTERNAL_COLUMNS = ('post_uri', 'uri', 'title', 'description', 'thumb_cid')
RECORD_EMBED_COLUMNS = ('post_uri', 'embed_uri', 'embed_cid')
VIDEO_COLUMNS = ('post_uri', 'video_cid', 'alt')
QUOTE_COLUMNS = ('uri', 'cid', 'subject', 'subject_cid', 'created_at', 'indexed_at', 'sort_at')


@dataclass
class IndexedPost:
    """A post row plus the context its notifications are derived from"""

    post: Row
    facets: List[Tuple[str, str]] = field(default_factory=list)
    embeds: List[Row] = field(default_factory=list)
    ancestors: List[Row] = field(default_factory=list)
    descendants: List[Row] = field(default_factory=list)
    threadgate: Optional[Dict[str, Any]] = None
    context_loaded: bool = False

    @property
    def uri(self) -> str:
        return self.post['uri']


# ===== Record parsing =====

def extract_facets(record: Dict[str, Any]) -> List[Tuple[str, str]]:
    """('mention', did) and ('link', uri) features of the post's rich text"""
    facets = []
    for facet in record.get('facets') or []:
        if not isinstance(facet, dict):
            continue
        for feature in facet.get('features') or []:
            if not isinstance(feature, dict):
                continue
            if feature.get('$type') == FACET_MENTION and feature.get('did'):
                facets.append(('mention', feature['did']))
            elif feature.get('$type') == FACET_LINK and feature.get('uri'):
                facets.append(('link', feature['uri']))
    return facets


def separate_embeds(embed: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Split recordWithMedia into its record and media parts"""
    if not isinstance(embed, dict):
        return []
    if embed.get('$type') == EMBED_RECORD_WITH_MEDIA:
        parts = []
        if isinstance(embed.get('record'), dict):
            parts.append({**embed['record'], '$type': EMBED_RECORD})
        if isinstance(embed.get('media'), dict):
            parts.append(embed['media'])
        return parts
    return [embed]


def embed_rows(post_uri: str, record: Dict[str, Any]) -> List[Row]:
    """One entry per embed: ``kind`` plus the rows for that embed's table"""
    uri = AtUri.parse(post_uri)
    embeds = []
    for part in separate_embeds(record.get('embed')):
        embed_type = part.get('$type')
        if embed_type == EMBED_IMAGES:
            images = []
            for position, image in enumerate(part.get('images') or []):
                image_cid = blob_cid(get_path(image, 'image'))
                if not image_cid:
                    continue
                images.append((post_uri, position, image_cid, sanitize_required_text(image.get('alt'))))
            if images:
                embeds.append({'kind': 'images', 'rows': images})
        elif embed_type == EMBED_EXTERNAL:
            external = part.get('external') or {}
            if external.get('uri'):
                embeds.append({'kind': 'external', 'rows': [(
                    post_uri,
                    external['uri'],
                    sanitize_required_text(external.get('title')),
                    sanitize_required_text(external.get('description')),
                    blob_cid(external.get('thumb')),
                )]})
        elif embed_type == EMBED_RECORD:
            embed_uri = require_uri(get_path(part, 'record', 'uri'), uri, 'embed.record.uri')
            embed_cid = get_path(part, 'record', 'cid')
            if not embed_cid:
                raise InvalidRecordError("post embed record is missing cid", post_uri)
            embeds.append({
                'kind': 'record',
                'embed_uri': embed_uri,
                'embed_cid': embed_cid,
                'rows': [(post_uri, embed_uri, embed_cid)],
            })
        elif embed_type == EMBED_VIDEO:
            video_cid = blob_cid(part.get('video'))
            if video_cid:
                # alt is optional for videos
                embeds.append({'kind': 'video', 'rows': [(post_uri, video_cid, sanitize_text(part.get('alt')))]})
    return embeds


def quoted_posts(embeds: List[Row]) -> List[Row]:
    return [
        e for e in embeds
        if e['kind'] == 'record' and safe_collection_of(e['embed_uri']) == Collection.POST.value
    ]


# ===== Notifications =====

def post_notifications(indexed: IndexedPost, reply_notif_depth: int = threads.DEFAULT_THREAD_HEIGHT) -> List[Notification]:
    """
    Mentions, quotes and reply notifications for a newly indexed post.

    The post's own notifications reach each recipient at most once and never
    its author. Replies indexed before this post are notified on their behalf.
    """
    post = indexed.post
    notifs: List[Notification] = []
    notified = {post['creator']}

    def maybe_notify(notif: Notification):
        if notif.did not in notified:
            notified.add(notif.did)
            notifs.append(notif)

    for kind, value in indexed.facets:
        if kind == 'mention':
            maybe_notify(Notification(
                did=value,
                author=post['creator'],
                reason='mention',
                record_uri=post['uri'],
                record_cid=post['cid'],
                sort_at=post['sort_at'],
            ))

    if not post.get('violates_embedding_rules'):
        for embed in quoted_posts(indexed.embeds):
            embed_uri = AtUri.parse(embed['embed_uri'])
            maybe_notify(Notification(
                did=embed_uri.host,
                author=post['creator'],
                reason='quote',
                reason_subject=str(embed_uri),
                record_uri=post['uri'],
                record_cid=post['cid'],
                sort_at=post['sort_at'],
            ))

    # No reply notifications for replies the thread gate rejected or that
    # claim a root they do not belong to
    if post.get('violates_thread_gate') or post.get('invalid_reply_root'):
        return notifs

    hidden_replies = set((indexed.threadgate or {}).get('hiddenReplies') or [])

    for ancestor in indexed.ancestors:
        if ancestor['uri'] == post['uri']:
            continue
        if ancestor['height'] < reply_notif_depth:
            ancestor_uri = AtUri.parse(ancestor['uri'])
            maybe_notify(Notification(
                did=ancestor_uri.host,
                author=post['creator'],
                reason='reply',
                reason_subject=str(ancestor_uri),
                record_uri=post['uri'],
                record_cid=post['cid'],
                sort_at=post['sort_at'],
            ))
            # Nothing above a hidden reply is notified
            if str(ancestor_uri) in hidden_replies:
                break

    # Replies indexed before this post notify its thread now, once per
    # (recipient, reply)
    retro_notified = set()
    for descendant in indexed.descendants:
        if descendant.get('violates_thread_gate'):
            continue
        for ancestor in indexed.ancestors:
            if descendant['depth'] + ancestor['height'] >= reply_notif_depth:
                continue
            ancestor_uri = AtUri.parse(ancestor['uri'])
            key = (ancestor_uri.host, descendant['uri'])
            if ancestor_uri.host == descendant['creator'] or key in retro_notified:
                continue
            retro_notified.add(key)
            notifs.append(Notification(
                did=ancestor_uri.host,
                author=descendant['creator'],
                reason='reply',
                reason_subject=str(ancestor_uri),
                record_uri=descendant['uri'],
                record_cid=descendant['cid'],
                sort_at=descendant['sort_at'],
            ))

    return notifs


class PostPlugin(RecordPlugin):
    collection = Collection.POST
    table = 'posts'
    columns = POST_COLUMNS
    has_aggregates = True

    def __init__(self, reply_notif_depth: int = threads.DEFAULT_THREAD_HEIGHT):
        super().__init__()
        self.reply_notif_depth = reply_notif_depth
        self.feed_writer = BulkWriter('feed_items', FEED_ITEM_COLUMNS, returning=False)
        self.embed_writers = {
            'images': BulkWriter('post_embed_images', IMAGE_COLUMNS, returning=False),
            'external': BulkWriter('post_embed_externals', EXTERNAL_COLUMNS, returning=False),
            'record': BulkWriter('post_embed_records', RECORD_EMBED_COLUMNS, returning=False),
            'video': BulkWriter('post_embed_videos', VIDEO_COLUMNS, returning=False),
        }
        self.quote_writer = BulkWriter('quotes', QUOTE_COLUMNS, returning=False)

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        reply = record.get('reply')
        if reply is not None:
            require_uri(get_path(reply, 'root', 'uri'), uri, 'reply.root.uri')
            require_uri(get_path(reply, 'parent', 'uri'), uri, 'reply.parent.uri')
        embed_rows(str(uri), record)

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        reply = record.get('reply') or {}
        return {
            'uri': str(uri),
            'cid': cid,
            'creator': uri.host,
            'text': sanitize_required_text(record.get('text')),
            'reply_root': get_path(reply, 'root', 'uri'),
            'reply_root_cid': get_path(reply, 'root', 'cid'),
            'reply_parent': get_path(reply, 'parent', 'uri'),
            'reply_parent_cid': get_path(reply, 'parent', 'cid'),
            'langs': to_json(record.get('langs')) if record.get('langs') else None,
            'tags': to_json(record.get('tags')) if record.get('tags') else None,
            **timestamps(record, timestamp),
        }

    def row_uri(self, row: IndexedPost) -> str:
        return row.uri

    # ===== Insert =====

    async def insert(
        self,
        conn: asyncpg.Connection,
        uri: AtUri,
        cid: str,
        record: Dict[str, Any],
        timestamp: datetime,
    ) -> Optional[IndexedPost]:
        self.validate(uri, record)
        row = self.build_row(uri, cid, record, timestamp)

        inserted = await conn.fetchrow(
            f"""
            INSERT INTO posts ({', '.join(POST_COLUMNS)})
            VALUES ({', '.join(f'${i}' for i in range(1, len(POST_COLUMNS) + 1))})
            ON CONFLICT DO NOTHING
            RETURNING *
            """,
            *self._values(row),
        )
        await conn.execute(
            """
            INSERT INTO feed_items (uri, cid, type, post_uri, originator_did, sort_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (uri) DO NOTHING
            """,
            *feed_item_values(row, 'post', row['uri']),
        )
        if inserted is None:
            # Already indexed
            return None

        post = dict(inserted)
        if record.get('reply'):
            await self._apply_reply_validation(conn, post, record['reply'])

        indexed = IndexedPost(post=post, facets=extract_facets(record))
        for embed in embed_rows(post['uri'], record):
            await self.embed_writers[embed['kind']].write(conn, embed['rows'])
            indexed.embeds.append(embed)

        quotes = quoted_posts(indexed.embeds)
        if quotes:
            await self._index_quotes(conn, [(post, quotes)])

        await self._load_context(conn, indexed)
        return indexed

    async def _apply_reply_validation(
        self,
        conn: asyncpg.Connection,
        post: Row,
        reply: Dict[str, Any],
        unavailable: AbstractSet[str] = frozenset(),
    ) -> None:
        invalid, violates = await threads.validate_reply(conn, post['creator'], reply, unavailable)
        if invalid or violates:
            post['invalid_reply_root'] = invalid
            post['violates_thread_gate'] = violates
            await conn.execute(
                'UPDATE posts SET invalid_reply_root = $2, violates_thread_gate = $3 WHERE uri = $1',
                post['uri'], invalid, violates,
            )

    async def _index_quotes(self, conn: asyncpg.Connection, quoting: List[Tuple[Row, List[Row]]]) -> None:
        """Quote rows, quote counts and post-gate checks for quoting posts"""
        quote_rows = []
        violating = []
        for post, quotes in quoting:
            for embed in quotes:
                quote_rows.append((
                    post['uri'], post['cid'], embed['embed_uri'], embed['embed_cid'],
                    post['created_at'], post['indexed_at'], post['sort_at'],
                ))
                if await threads.validate_post_embed(conn, embed['embed_uri'], post['uri']):
                    post['violates_embedding_rules'] = True
                    violating.append(post['uri'])

        await self.quote_writer.write(conn, quote_rows)
        await aggregates.update_quote_counts(conn, [row[2] for row in quote_rows])

        if violating:
            await conn.execute(
                'UPDATE posts SET violates_embedding_rules = TRUE WHERE uri = ANY($1::text[])',
                sorted(set(violating)),
            )

    async def _load_context(self, conn: asyncpg.Connection, indexed: IndexedPost) -> None:
        post = indexed.post
        indexed.threadgate = await threads.get_threadgate_record(conn, post.get('reply_root') or post['uri'])
        indexed.ancestors = [dict(r) for r in await threads.get_ancestors_and_self(conn, post['uri'], self.reply_notif_depth)]
        indexed.descendants = [dict(r) for r in await threads.get_descendants(conn, post['uri'], self.reply_notif_depth)]
        indexed.context_loaded = True

    async def load_notification_context(self, conn: asyncpg.Connection, rows: List[IndexedPost]) -> None:
        for indexed in rows:
            if not indexed.context_loaded:
                await self._load_context(conn, indexed)

    async def insert_bulk(self, conn: asyncpg.Connection, items: Sequence[RecordInput]) -> List[IndexedPost]:
        by_uri: Dict[str, RecordInput] = {}
        rows = []
        for item in items:
            self.validate(item.uri, item.record)
            row = self.build_row(item.uri, item.cid, item.record, item.timestamp)
            by_uri[row['uri']] = item
            rows.append(row)

        inserted = await self.writer.write(conn, [self._values(row) for row in rows])
        await self.feed_writer.write(conn, [feed_item_values(row, 'post', row['uri']) for row in rows])
        if not inserted:
            return []

        inserted_by_uri = {r['uri']: dict(r) for r in inserted}
        # Input order. A reply sees a parent or root earlier in the batch and
        # treats later ones as not yet indexed
        posts = [inserted_by_uri[uri] for uri in by_uri if uri in inserted_by_uri]
        later = {post['uri'] for post in posts}

        indexed_posts = []
        embed_batches: Dict[str, List[tuple]] = {kind: [] for kind in self.embed_writers}
        quoting = []
        for post in posts:
            later.discard(post['uri'])
            record = by_uri[post['uri']].record
            if record.get('reply'):
                await self._apply_reply_validation(conn, post, record['reply'], later)
            indexed = IndexedPost(post=post, facets=extract_facets(record), embeds=embed_rows(post['uri'], record))
            for embed in indexed.embeds:
                embed_batches[embed['kind']].extend(embed['rows'])
            quotes = quoted_posts(indexed.embeds)
            if quotes:
                quoting.append((post, quotes))
            indexed_posts.append(indexed)

        for kind, embed_batch in embed_batches.items():
            await self.embed_writers[kind].write(conn, embed_batch)
        if quoting:
            await self._index_quotes(conn, quoting)

        logger.debug(f"[BULK] posts: {len(indexed_posts)} of {len(rows)} newly indexed")
        return indexed_posts

    # ===== Delete =====

    async def delete(self, conn: asyncpg.Connection, uri: AtUri) -> Optional[IndexedPost]:
        uri_str = str(uri)
        deleted = await conn.fetchrow('DELETE FROM posts WHERE uri = $1 RETURNING *', uri_str)
        await conn.execute('DELETE FROM feed_items WHERE post_uri = $1', uri_str)
        await conn.execute('DELETE FROM quotes WHERE subject = $1', uri_str)

        embeds = []
        images = await conn.fetch('DELETE FROM post_embed_images WHERE post_uri = $1 RETURNING *', uri_str)
        if images:
            embeds.append({'kind': 'images', 'rows': [tuple(r.values()) for r in images]})
        external = await conn.fetchrow('DELETE FROM post_embed_externals WHERE post_uri = $1 RETURNING *', uri_str)
        if external:
            embeds.append({'kind': 'external', 'rows': [tuple(external.values())]})
        video = await conn.fetchrow('DELETE FROM post_embed_videos WHERE post_uri = $1 RETURNING *', uri_str)
        if video:
            embeds.append({'kind': 'video', 'rows': [tuple(video.values())]})
        for embedded in await conn.fetch('DELETE FROM post_embed_records WHERE post_uri = $1 RETURNING *', uri_str):
            embeds.append({
                'kind': 'record',
                'embed_uri': embedded['embed_uri'],
                'embed_cid': embedded['embed_cid'],
                'rows': [(uri_str, embedded['embed_uri'], embedded['embed_cid'])],
            })

        quotes = quoted_posts(embeds)
        if quotes:
            await conn.execute('DELETE FROM quotes WHERE uri = $1', uri_str)
            await aggregates.update_quote_counts(conn, [e['embed_uri'] for e in quotes])

        if deleted is None:
            return None
        return IndexedPost(post=dict(deleted), embeds=embeds)

    # ===== Notifications =====

    def notifications_for_insert(self, row: IndexedPost) -> List[Notification]:
        return post_notifications(row, self.reply_notif_depth)

    def notifications_for_delete(self, deleted: IndexedPost, replaced_by: Optional[IndexedPost]) -> NotificationChanges:
        notifs = self.notifications_for_insert(replaced_by) if replaced_by else []
        return NotificationChanges(notifications=notifs, to_delete=[deleted.uri])

    # ===== Aggregates =====

    async def update_aggregates_bulk(self, conn: asyncpg.Connection, rows: List[IndexedPost]) -> None:
        await aggregates.update_reply_counts(conn, [r.post['reply_parent'] for r in rows if r.post.get('reply_parent')])
        await aggregates.update_posts_counts(conn, [r.post['creator'] for r in rows])

    def aggregate_subjects(self, rows: List[IndexedPost]) -> List[str]:
        return (
            [r.post['reply_parent'] for r in rows if r.post.get('reply_parent')]
            + [r.post['creator'] for r in rows]
        )
