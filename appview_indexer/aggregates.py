"""
Aggregate counters.

Counters are never incremented. Each recount re-derives the value from the
child table for every subject passed in and upserts it, so running a recount
twice, or concurrently with inserts, converges on the true count.
"""

import logging
from typing import Iterable, List

import asyncpg

logger = logging.getLogger(__name__)


def _distinct(keys: Iterable[str]) -> List[str]:
    # Sorted so concurrent recounts lock aggregate rows in the same order
    return sorted({k for k in keys if k})


async def _recount(
    conn: asyncpg.Connection,
    agg_table: str,
    agg_key: str,
    agg_column: str,
    child_table: str,
    child_column: str,
    keys: Iterable[str],
    child_filter: str = "",
) -> int:
    subjects = _distinct(keys)
    if not subjects:
        return 0

    await conn.execute(
        f"""
        INSERT INTO {agg_table} ({agg_key}, {agg_column})
        SELECT v.key, count(c.{child_column})
        FROM unnest($1::text[]) AS v(key)
        LEFT JOIN {child_table} c ON c.{child_column} = v.key {child_filter}
        GROUP BY v.key
        ON CONFLICT ({agg_key}) DO UPDATE SET {agg_column} = EXCLUDED.{agg_column}
        """,
        subjects,
    )
    logger.debug(f"[AGGREGATES] {agg_table}.{agg_column} recounted for {len(subjects)} subjects")
    return len(subjects)


async def update_like_counts(conn: asyncpg.Connection, post_uris: Iterable[str]) -> int:
    return await _recount(conn, 'post_aggregates', 'uri', 'like_count', 'likes', 'subject', post_uris)


async def update_repost_counts(conn: asyncpg.Connection, post_uris: Iterable[str]) -> int:
    return await _recount(conn, 'post_aggregates', 'uri', 'repost_count', 'reposts', 'subject', post_uris)


async def update_reply_counts(conn: asyncpg.Connection, post_uris: Iterable[str]) -> int:
    """Replies that violate the root's thread gate are not counted"""
    return await _recount(
        conn, 'post_aggregates', 'uri', 'reply_count', 'posts', 'reply_parent', post_uris,
        child_filter="AND c.violates_thread_gate IS NOT TRUE",
    )


async def update_quote_counts(conn: asyncpg.Connection, post_uris: Iterable[str]) -> int:
    return await _recount(conn, 'post_aggregates', 'uri', 'quote_count', 'quotes', 'subject', post_uris)


async def update_followers_counts(conn: asyncpg.Connection, dids: Iterable[str]) -> int:
    return await _recount(conn, 'profile_aggregates', 'did', 'followers_count', 'follows', 'subject_did', dids)


async def update_follows_counts(conn: asyncpg.Connection, dids: Iterable[str]) -> int:
    return await _recount(conn, 'profile_aggregates', 'did', 'follows_count', 'follows', 'creator', dids)


async def update_posts_counts(conn: asyncpg.Connection, dids: Iterable[str]) -> int:
    return await _recount(conn, 'profile_aggregates', 'did', 'posts_count', 'posts', 'creator', dids)


async def recompute_posts(conn: asyncpg.Connection, post_uris: Iterable[str]) -> int:
    """Recount every post counter for the given posts"""
    uris = _distinct(post_uris)
    if not uris:
        return 0
    async with conn.transaction():
        await update_like_counts(conn, uris)
        await update_repost_counts(conn, uris)
        await update_reply_counts(conn, uris)
        await update_quote_counts(conn, uris)
    logger.info(f"[AGGREGATES] Recomputed post aggregates for {len(uris)} posts")
    return len(uris)


async def recompute_actors(conn: asyncpg.Connection, dids: Iterable[str]) -> int:
    """Recount every profile counter for the given actors"""
    actors = _distinct(dids)
    if not actors:
        return 0
    async with conn.transaction():
        await update_followers_counts(conn, actors)
        await update_follows_counts(conn, actors)
        await update_posts_counts(conn, actors)
    logger.info(f"[AGGREGATES] Recomputed profile aggregates for {len(actors)} actors")
    return len(actors)


async def get_post_aggregates(conn: asyncpg.Connection, uri: str):
    return await conn.fetchrow(
        'SELECT uri, like_count, repost_count, reply_count, quote_count FROM post_aggregates WHERE uri = $1',
        uri,
    )


async def get_profile_aggregates(conn: asyncpg.Connection, did: str):
    return await conn.fetchrow(
        'SELECT did, followers_count, follows_count, posts_count FROM profile_aggregates WHERE did = $1',
        did,
    )
