"""
Database schema for the indexer.

Every statement is idempotent so ``apply_schema`` can run on each deploy.
Timestamps are timestamptz; ``sort_at`` is computed by the indexer as
min(created_at, indexed_at).
"""

import logging
from typing import List

import asyncpg

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS: List[str] = [
    # Raw record bodies and first-writer-wins bookkeeping
    """
    CREATE TABLE IF NOT EXISTS records (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        did TEXT NOT NULL,
        json JSONB NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS records_did_idx ON records (did)",
    """
    CREATE TABLE IF NOT EXISTS duplicate_records (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        duplicate_of TEXT NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS duplicate_records_duplicate_of_idx ON duplicate_records (duplicate_of, indexed_at)",

    # Posts and their secondary tables
    """
    CREATE TABLE IF NOT EXISTS posts (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        text TEXT NOT NULL,
        reply_root TEXT,
        reply_root_cid TEXT,
        reply_parent TEXT,
        reply_parent_cid TEXT,
        langs JSONB,
        tags JSONB,
        invalid_reply_root BOOLEAN,
        violates_thread_gate BOOLEAN,
        violates_embedding_rules BOOLEAN,
        has_thread_gate BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS posts_creator_sort_at_idx ON posts (creator, sort_at)",
    "CREATE INDEX IF NOT EXISTS posts_reply_parent_idx ON posts (reply_parent)",
    "CREATE INDEX IF NOT EXISTS posts_reply_root_idx ON posts (reply_root)",
    """
    CREATE TABLE IF NOT EXISTS feed_items (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        type TEXT NOT NULL,
        post_uri TEXT NOT NULL,
        originator_did TEXT NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS feed_items_originator_sort_at_idx ON feed_items (originator_did, sort_at)",
    "CREATE INDEX IF NOT EXISTS feed_items_post_uri_idx ON feed_items (post_uri)",
    """
    CREATE TABLE IF NOT EXISTS post_embed_images (
        post_uri TEXT NOT NULL,
        position INTEGER NOT NULL,
        image_cid TEXT NOT NULL,
        alt TEXT NOT NULL DEFAULT '',
        PRIMARY KEY (post_uri, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post_embed_externals (
        post_uri TEXT PRIMARY KEY,
        uri TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        thumb_cid TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post_embed_records (
        post_uri TEXT NOT NULL,
        embed_uri TEXT NOT NULL,
        embed_cid TEXT NOT NULL,
        PRIMARY KEY (post_uri, embed_uri)
    )
    """,
    "CREATE INDEX IF NOT EXISTS post_embed_records_embed_uri_idx ON post_embed_records (embed_uri)",
    """
    CREATE TABLE IF NOT EXISTS post_embed_videos (
        post_uri TEXT PRIMARY KEY,
        video_cid TEXT NOT NULL,
        alt TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quotes (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        subject TEXT NOT NULL,
        subject_cid TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS quotes_subject_idx ON quotes (subject)",

    # Interactions
    """
    CREATE TABLE IF NOT EXISTS likes (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        subject TEXT NOT NULL,
        subject_cid TEXT NOT NULL,
        via TEXT,
        via_cid TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL,
        UNIQUE (creator, subject)
    )
    """,
    "CREATE INDEX IF NOT EXISTS likes_subject_idx ON likes (subject)",
    """
    CREATE TABLE IF NOT EXISTS reposts (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        subject TEXT NOT NULL,
        subject_cid TEXT NOT NULL,
        via TEXT,
        via_cid TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL,
        UNIQUE (creator, subject)
    )
    """,
    "CREATE INDEX IF NOT EXISTS reposts_subject_idx ON reposts (subject)",

    # Social graph
    """
    CREATE TABLE IF NOT EXISTS follows (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        subject_did TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL,
        UNIQUE (creator, subject_did)
    )
    """,
    "CREATE INDEX IF NOT EXISTS follows_subject_did_idx ON follows (subject_did)",
    """
    CREATE TABLE IF NOT EXISTS blocks (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        subject_did TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL,
        UNIQUE (creator, subject_did)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lists (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        name TEXT NOT NULL,
        purpose TEXT NOT NULL,
        description TEXT,
        description_facets JSONB,
        avatar_cid TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS lists_creator_idx ON lists (creator)",
    """
    CREATE TABLE IF NOT EXISTS list_items (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        subject_did TEXT NOT NULL,
        list_uri TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL,
        UNIQUE (list_uri, subject_did)
    )
    """,
    "CREATE INDEX IF NOT EXISTS list_items_subject_did_idx ON list_items (subject_did)",
    """
    CREATE TABLE IF NOT EXISTS list_blocks (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        subject_uri TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL,
        UNIQUE (creator, subject_uri)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS starter_packs (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verifications (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        rkey TEXT NOT NULL,
        creator TEXT NOT NULL,
        subject TEXT NOT NULL,
        handle TEXT NOT NULL,
        display_name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL,
        UNIQUE (creator, subject)
    )
    """,

    # Actor-level records
    """
    CREATE TABLE IF NOT EXISTS profiles (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        display_name TEXT,
        description TEXT,
        avatar_cid TEXT,
        banner_cid TEXT,
        joined_via_starter_pack_uri TEXT,
        pinned_post TEXT,
        pinned_post_cid TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS profiles_creator_idx ON profiles (creator)",
    """
    CREATE TABLE IF NOT EXISTS feed_generators (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        feed_did TEXT NOT NULL,
        display_name TEXT NOT NULL,
        description TEXT,
        description_facets JSONB,
        avatar_cid TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS labelers (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL,
        sort_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS thread_gates (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        creator TEXT NOT NULL,
        post_uri TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        indexed_at TIMESTAMPTZ NOT NULL
    )
    """,

    # Aggregates
    """
    CREATE TABLE IF NOT EXISTS post_aggregates (
        uri TEXT PRIMARY KEY,
        like_count BIGINT NOT NULL DEFAULT 0,
        repost_count BIGINT NOT NULL DEFAULT 0,
        reply_count BIGINT NOT NULL DEFAULT 0,
        quote_count BIGINT NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profile_aggregates (
        did TEXT PRIMARY KEY,
        followers_count BIGINT NOT NULL DEFAULT 0,
        follows_count BIGINT NOT NULL DEFAULT 0,
        posts_count BIGINT NOT NULL DEFAULT 0
    )
    """,

    # Notification table, written by DatabaseNotificationQueue
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id BIGSERIAL PRIMARY KEY,
        did TEXT NOT NULL,
        record_uri TEXT NOT NULL,
        record_cid TEXT NOT NULL,
        author TEXT NOT NULL,
        reason TEXT NOT NULL,
        reason_subject TEXT,
        sort_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS notifications_did_sort_at_idx ON notifications (did, sort_at)",
    "CREATE INDEX IF NOT EXISTS notifications_record_uri_idx ON notifications (record_uri)",
]

# Tables holding indexed state, children before parents
INDEX_TABLES: List[str] = [
    'notifications',
    'post_aggregates',
    'profile_aggregates',
    'thread_gates',
    'labelers',
    'feed_generators',
    'profiles',
    'verifications',
    'starter_packs',
    'list_blocks',
    'list_items',
    'lists',
    'blocks',
    'follows',
    'reposts',
    'likes',
    'quotes',
    'post_embed_videos',
    'post_embed_records',
    'post_embed_externals',
    'post_embed_images',
    'feed_items',
    'posts',
    'duplicate_records',
    'records',
]


async def apply_schema(conn: asyncpg.Connection):
    """Create all tables and indexes that do not exist yet"""
    async with conn.transaction():
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)
    logger.info(f"[SCHEMA] Applied {len(SCHEMA_STATEMENTS)} schema statements")


async def truncate_all(conn: asyncpg.Connection):
    """Remove every indexed row (used by tests and full re-indexes)"""
    await conn.execute(f"TRUNCATE {', '.join(INDEX_TABLES)} RESTART IDENTITY")
    logger.info(f"[SCHEMA] Truncated {len(INDEX_TABLES)} tables")
