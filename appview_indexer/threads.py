"""
Reply thread traversal and reply/quote policy checks.

Both traversals are bounded by an explicit height/depth. Reply pointers come
from untrusted records, so a cycle is possible and the bound is what
terminates the recursion.
"""

import logging
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Dict, List, Mapping, Optional, Tuple

import asyncpg

from .nsid import (
    FACET_MENTION,
    POSTGATE_DISABLE_RULE,
    THREADGATE_FOLLOWER_RULE,
    THREADGATE_FOLLOWING_RULE,
    THREADGATE_LIST_RULE,
    THREADGATE_MENTION_RULE,
)
from .uris import post_uri_to_postgate_uri, post_uri_to_threadgate_uri, uri_to_did
from .util import from_json, get_path

logger = logging.getLogger(__name__)

DEFAULT_THREAD_HEIGHT = 5
DEFAULT_THREAD_DEPTH = 5


# ===== Traversal =====

ANCESTORS_SQL = """
    WITH RECURSIVE ancestor(uri, ancestor_uri, height) AS (
        SELECT p.uri, p.reply_parent, 0
        FROM posts p
        WHERE p.uri = $1
        UNION ALL
        SELECT p.uri, p.reply_parent, a.height + 1
        FROM posts p
        JOIN ancestor a ON p.uri = a.ancestor_uri
        WHERE a.height < $2
    )
    SELECT uri, ancestor_uri, height FROM ancestor ORDER BY height
"""

DESCENDANTS_SQL = """
    WITH RECURSIVE descendant(uri, depth) AS (
        SELECT p.uri, 1
        FROM posts p
        WHERE p.reply_parent = $1 AND 1 <= $2
        UNION ALL
        SELECT p.uri, d.depth + 1
        FROM posts p
        JOIN descendant d ON p.reply_parent = d.uri
        WHERE d.depth < $2
    )
    SELECT d.uri, d.depth, p.cid, p.creator, p.sort_at, p.violates_thread_gate
    FROM descendant d
    JOIN posts p ON p.uri = d.uri
    ORDER BY d.depth, p.sort_at
"""


async def get_ancestors_and_self(
    conn: asyncpg.Connection,
    uri: str,
    height: int = DEFAULT_THREAD_HEIGHT,
) -> List[asyncpg.Record]:
    """(uri, ancestor_uri, height) rows walking up from ``uri``, self at height 0"""
    return await conn.fetch(ANCESTORS_SQL, uri, height)


async def get_descendants(
    conn: asyncpg.Connection,
    uri: str,
    depth: int = DEFAULT_THREAD_DEPTH,
) -> List[asyncpg.Record]:
    """(uri, depth, cid, creator, sort_at, violates_thread_gate) rows below ``uri``, direct replies at depth 1"""
    return await conn.fetch(DESCENDANTS_SQL, uri, depth)


# ===== Reply validity =====

def invalid_reply_root(reply: Mapping[str, Any], parent: Mapping[str, Any]) -> bool:
    """
    Whether a reply's declared root is inconsistent with its parent.

    ``parent`` carries the parent's record body and its own cached
    ``invalid_reply_root`` flag.
    """
    reply_root = get_path(reply, 'root', 'uri')
    reply_parent = get_path(reply, 'parent', 'uri')

    # An invalid parent makes every reply below it invalid
    if parent.get('invalid_reply_root'):
        return True

    parent_record = parent.get('record') or {}

    # Replying to the root: the root must not itself be a reply
    if reply_parent == reply_root:
        return bool(parent_record.get('reply'))

    # Replying to a reply: it must belong to the same thread
    return get_path(parent_record, 'reply', 'root', 'uri') != reply_root


# ===== Thread gate =====

@dataclass
class ThreadGatePolicy:
    can_reply: bool = False
    allow_mentions: bool = False
    allow_followers: bool = False
    allow_following: bool = False
    allow_list_uris: List[str] = field(default_factory=list)


def _rule_types(gate: Mapping[str, Any]) -> List[Tuple[str, Any]]:
    return [(rule.get('$type'), rule) for rule in gate.get('allow') or [] if isinstance(rule, dict)]


def parse_thread_gate(
    replier_did: str,
    owner_did: str,
    root_post: Optional[Mapping[str, Any]],
    gate: Optional[Mapping[str, Any]],
) -> ThreadGatePolicy:
    """Resolve what a thread gate allows for one replier, without touching the database"""
    if replier_did == owner_did:
        return ThreadGatePolicy(can_reply=True)

    # No allow field means anyone may reply; an empty list means no one
    if not gate or gate.get('allow') is None:
        return ThreadGatePolicy(can_reply=True)

    rules = _rule_types(gate)
    policy = ThreadGatePolicy(
        allow_mentions=any(t == THREADGATE_MENTION_RULE for t, _ in rules),
        allow_followers=any(t == THREADGATE_FOLLOWER_RULE for t, _ in rules),
        allow_following=any(t == THREADGATE_FOLLOWING_RULE for t, _ in rules),
        allow_list_uris=[r.get('list') for t, r in rules if t == THREADGATE_LIST_RULE and r.get('list')],
    )

    if policy.allow_mentions and root_post:
        for facet in root_post.get('facets') or []:
            for feature in facet.get('features') or []:
                if feature.get('$type') == FACET_MENTION and feature.get('did') == replier_did:
                    policy.can_reply = True
                    return policy

    return policy


async def violates_thread_gate(
    conn: asyncpg.Connection,
    replier_did: str,
    owner_did: str,
    root_post: Optional[Mapping[str, Any]],
    gate: Optional[Mapping[str, Any]],
) -> bool:
    policy = parse_thread_gate(replier_did, owner_did, root_post, gate)
    if policy.can_reply:
        return False
    if not (policy.allow_followers or policy.allow_following or policy.allow_list_uris):
        return True

    if policy.allow_followers:
        follows_owner = await conn.fetchval(
            'SELECT EXISTS (SELECT 1 FROM follows WHERE creator = $1 AND subject_did = $2)',
            replier_did, owner_did,
        )
        if follows_owner:
            return False

    if policy.allow_following:
        followed_by_owner = await conn.fetchval(
            'SELECT EXISTS (SELECT 1 FROM follows WHERE creator = $1 AND subject_did = $2)',
            owner_did, replier_did,
        )
        if followed_by_owner:
            return False

    if policy.allow_list_uris:
        in_list = await conn.fetchval(
            'SELECT EXISTS (SELECT 1 FROM list_items WHERE list_uri = ANY($1::text[]) AND subject_did = $2)',
            policy.allow_list_uris, replier_did,
        )
        if in_list:
            return False

    return True


# ===== Post gate =====

def parse_post_gate(
    gate: Optional[Mapping[str, Any]],
    viewer_did: str,
    author_did: str,
) -> bool:
    """Whether ``viewer_did`` may embed a post by ``author_did``"""
    if viewer_did == author_did:
        return True
    if not gate or not gate.get('embeddingRules'):
        return True
    for rule in gate['embeddingRules']:
        if isinstance(rule, dict) and rule.get('$type') == POSTGATE_DISABLE_RULE:
            return False
    return True


# ===== Record lookups =====

async def get_record_json(conn: asyncpg.Connection, uri: str) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow('SELECT json FROM records WHERE uri = $1', uri)
    return from_json(row['json']) if row else None


async def get_threadgate_record(conn: asyncpg.Connection, post_uri: str) -> Optional[Dict[str, Any]]:
    return await get_record_json(conn, post_uri_to_threadgate_uri(post_uri))


async def get_postgate_record(conn: asyncpg.Connection, post_uri: str) -> Optional[Dict[str, Any]]:
    return await get_record_json(conn, post_uri_to_postgate_uri(post_uri))


async def get_reply_refs(
    conn: asyncpg.Connection,
    reply: Mapping[str, Any],
    unavailable: AbstractSet[str] = frozenset(),
) -> Dict[str, Optional[Dict[str, Any]]]:
    """
    Load root, parent and the root's thread gate in one round trip.

    Root and parent count only once their post row exists. URIs in
    ``unavailable`` are reported missing even when already written.
    """
    root_uri = get_path(reply, 'root', 'uri')
    parent_uri = get_path(reply, 'parent', 'uri')
    gate_uri = post_uri_to_threadgate_uri(root_uri)

    rows = await conn.fetch(
        """
        SELECT r.uri, r.json, p.uri AS post_uri, p.invalid_reply_root
        FROM records r
        LEFT JOIN posts p ON p.uri = r.uri
        WHERE r.uri = ANY($1::text[])
        """,
        [root_uri, parent_uri, gate_uri],
    )
    by_uri = {
        row['uri']: {
            'uri': row['uri'],
            'record': from_json(row['json']),
            'invalid_reply_root': row['invalid_reply_root'],
            'indexed': row['post_uri'] is not None,
        }
        for row in rows
        if row['uri'] not in unavailable
    }
    posts = {uri: ref for uri, ref in by_uri.items() if ref['indexed']}
    return {
        'root': posts.get(root_uri),
        'parent': posts.get(parent_uri),
        'gate': by_uri.get(gate_uri),
    }


async def validate_reply(
    conn: asyncpg.Connection,
    creator: str,
    reply: Mapping[str, Any],
    unavailable: AbstractSet[str] = frozenset(),
) -> Tuple[bool, bool]:
    """Returns (invalid_reply_root, violates_thread_gate) for a new reply"""
    refs = await get_reply_refs(conn, reply, unavailable)
    parent = refs['parent']
    invalid = parent is None or invalid_reply_root(reply, parent)

    root = refs['root']
    gate = refs['gate']
    violates = await violates_thread_gate(
        conn,
        creator,
        uri_to_did(get_path(reply, 'root', 'uri')),
        root['record'] if root else None,
        gate['record'] if gate else None,
    )
    return invalid, violates


async def validate_post_embed(conn: asyncpg.Connection, embed_uri: str, parent_uri: str) -> bool:
    """True when the quoted post's gate forbids the quoting post's author from embedding it"""
    gate = await get_postgate_record(conn, embed_uri)
    if gate is None:
        return False
    return not parse_post_gate(gate, uri_to_did(parent_uri), uri_to_did(embed_uri))


# ===== Read surface =====

async def get_thread(
    conn: asyncpg.Connection,
    uri: str,
    height: int = DEFAULT_THREAD_HEIGHT,
    depth: int = DEFAULT_THREAD_DEPTH,
) -> Dict[str, List[Dict[str, Any]]]:
    """Ancestors (nearest first, excluding self) and descendants of a post"""
    ancestors = await get_ancestors_and_self(conn, uri, height)
    descendants = await get_descendants(conn, uri, depth)
    return {
        'ancestors': [
            {'uri': row['uri'], 'height': row['height']}
            for row in ancestors if row['height'] > 0
        ],
        'descendants': [
            {
                'uri': row['uri'],
                'depth': row['depth'],
                'creator': row['creator'],
                'sort_at': row['sort_at'],
            }
            for row in descendants
        ],
    }
