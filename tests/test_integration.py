"""
End-to-end indexing against PostgreSQL.

Skipped unless TEST_DATABASE_URL points at a disposable database.
"""

from appview_indexer import aggregates
from appview_indexer.nsid import (
    EMBED_IMAGES,
    EMBED_RECORD,
    EMBED_RECORD_WITH_MEDIA,
    THREADGATE_FOLLOWER_RULE,
    THREADGATE_FOLLOWING_RULE,
    THREADGATE_LIST_RULE,
)

from .conftest import ALICE, BOB, CAROL

CREATED = '2024-05-01T11:00:00Z'
DAVE = 'did:plc:dave'


def post_uri(did, rkey):
    return f"at://{did}/app.bsky.feed.post/{rkey}"


def post(text, root=None, parent=None):
    record = {'$type': 'app.bsky.feed.post', 'text': text, 'createdAt': CREATED}
    if root:
        record['reply'] = {
            'root': {'uri': root, 'cid': 'bafyroot'},
            'parent': {'uri': parent or root, 'cid': 'bafyparent'},
        }
    return record


def like(subject, via=None):
    record = {'$type': 'app.bsky.feed.like', 'subject': {'uri': subject, 'cid': 'bafysubject'}, 'createdAt': CREATED}
    if via:
        record['via'] = {'uri': via, 'cid': 'bafyvia'}
    return record


def repost(subject, via=None):
    record = {'$type': 'app.bsky.feed.repost', 'subject': {'uri': subject, 'cid': 'bafysubject'}, 'createdAt': CREATED}
    if via:
        record['via'] = {'uri': via, 'cid': 'bafyvia'}
    return record


def follow(subject):
    return {'$type': 'app.bsky.graph.follow', 'subject': subject, 'createdAt': CREATED}


def thread_gate(root, rule):
    return {'$type': 'app.bsky.feed.threadgate', 'post': root, 'allow': [rule], 'createdAt': CREATED}


async def post_counts(service, uri):
    async with service.pool.acquire() as conn:
        return await aggregates.get_post_aggregates(conn, uri)


async def profile_counts(service, did):
    async with service.pool.acquire() as conn:
        return await aggregates.get_profile_aggregates(conn, did)


async def fetchval(service, sql, *args):
    async with service.pool.acquire() as conn:
        return await conn.fetchval(sql, *args)


async def test_create_is_idempotent(service):
    root = post_uri(ALICE, 'root')
    assert await service.on_create(root, None, post('hello')) is not None
    assert await service.on_create(root, None, post('hello')) is None

    assert await fetchval(service, 'SELECT count(*) FROM posts') == 1
    assert await fetchval(service, "SELECT count(*) FROM feed_items WHERE type = 'post'") == 1
    assert (await profile_counts(service, ALICE))['posts_count'] == 1


async def test_like_counts_follow_creates_and_deletes(service):
    root = post_uri(ALICE, 'root')
    await service.on_create(root, None, post('hello'))
    for i, did in enumerate([BOB, CAROL, DAVE]):
        await service.on_create(f"at://{did}/app.bsky.feed.like/l{i}", None, like(root))
    assert (await post_counts(service, root))['like_count'] == 3

    await service.on_delete(f"at://{BOB}/app.bsky.feed.like/l0")
    assert (await post_counts(service, root))['like_count'] == 2
    assert f"at://{BOB}/app.bsky.feed.like/l0" in service.queue.deleted


async def test_self_like_is_not_notified(service):
    root = post_uri(ALICE, 'root')
    await service.on_create(root, None, post('hello'))
    await service.on_create(f"at://{ALICE}/app.bsky.feed.like/l1", None, like(root))
    await service.on_create(f"at://{BOB}/app.bsky.feed.like/l1", None, like(root))

    assert [(n.did, n.author, n.reason) for n in service.queue.notifications] == [(ALICE, BOB, 'like')]


async def test_reply_notifies_up_the_thread(service):
    root = post_uri(ALICE, 'root')
    r1 = post_uri(BOB, 'r1')
    r2 = post_uri(CAROL, 'r2')
    await service.on_create(root, None, post('root'))
    await service.on_create(r1, None, post('first', root=root))
    await service.on_create(r2, None, post('second', root=root, parent=r1))

    for_r2 = [(n.did, n.reason) for n in service.queue.notifications if n.record_uri == r2]
    assert for_r2 == [(BOB, 'reply'), (ALICE, 'reply')]
    assert (await post_counts(service, root))['reply_count'] == 1
    assert (await post_counts(service, r1))['reply_count'] == 1


async def test_invalid_reply_root_is_flagged_and_silent(service):
    root = post_uri(ALICE, 'root')
    other = post_uri(ALICE, 'other')
    r1 = post_uri(BOB, 'r1')
    r2 = post_uri(CAROL, 'r2')
    await service.on_create(root, None, post('root'))
    await service.on_create(other, None, post('other root'))
    await service.on_create(r1, None, post('valid', root=root))
    # Replies to r1 but claims a different root
    await service.on_create(r2, None, post('invalid', root=other, parent=r1))

    assert await fetchval(service, 'SELECT invalid_reply_root FROM posts WHERE uri = $1', r1) is not True
    assert await fetchval(service, 'SELECT invalid_reply_root FROM posts WHERE uri = $1', r2) is True
    assert [n for n in service.queue.notifications if n.record_uri == r2] == []


async def test_thread_gate_allow_following(service):
    root = post_uri(ALICE, 'root')
    await service.on_create(root, None, post('gated'))
    await service.on_create(
        f"at://{ALICE}/app.bsky.feed.threadgate/root", None,
        thread_gate(root, {'$type': THREADGATE_FOLLOWING_RULE}),
    )
    await service.on_create(f"at://{ALICE}/app.bsky.graph.follow/f1", None, follow(CAROL))

    blocked = post_uri(BOB, 'r1')
    allowed = post_uri(CAROL, 'r1')
    await service.on_create(blocked, None, post('not followed', root=root))
    await service.on_create(allowed, None, post('followed', root=root))

    assert await fetchval(service, 'SELECT violates_thread_gate FROM posts WHERE uri = $1', blocked) is True
    assert await fetchval(service, 'SELECT violates_thread_gate FROM posts WHERE uri = $1', allowed) is not True
    assert await fetchval(service, 'SELECT has_thread_gate FROM posts WHERE uri = $1', root) is True
    assert (await post_counts(service, root))['reply_count'] == 1
    reply_notifs = [n.record_uri for n in service.queue.notifications if n.reason == 'reply']
    assert reply_notifs == [allowed]


async def test_bulk_then_single_like_counts(service):
    root = post_uri(ALICE, 'root')
    await service.on_create(root, None, post('popular'))
    result = await service.on_create_bulk([
        {'uri': f"at://did:plc:fan{i}/app.bsky.feed.like/l1", 'record': like(root)}
        for i in range(100)
    ])
    assert result.indexed['app.bsky.feed.like'] == 100
    assert (await post_counts(service, root))['like_count'] == 100

    await service.on_create(f"at://{BOB}/app.bsky.feed.like/l1", None, like(root))
    assert (await post_counts(service, root))['like_count'] == 101


async def test_bulk_reply_after_parent_in_same_batch(service):
    root = post_uri(ALICE, 'root')
    r1 = post_uri(BOB, 'r1')
    result = await service.on_create_bulk([
        {'uri': root, 'record': post('root')},
        {'uri': r1, 'record': post('reply', root=root)},
    ])
    assert result.indexed['app.bsky.feed.post'] == 2
    assert await fetchval(service, 'SELECT invalid_reply_root FROM posts WHERE uri = $1', r1) is not True
    assert [(n.did, n.reason) for n in service.queue.notifications] == [(ALICE, 'reply')]


async def test_duplicate_follow_is_promoted_on_delete(service):
    first = f"at://{BOB}/app.bsky.graph.follow/f1"
    second = f"at://{BOB}/app.bsky.graph.follow/f2"
    await service.on_create(first, None, follow(ALICE))
    assert await service.on_create(second, None, follow(ALICE)) is None
    assert await fetchval(service, 'SELECT duplicate_of FROM duplicate_records WHERE uri = $1', second) == first

    await service.on_delete(first)

    assert await fetchval(service, 'SELECT uri FROM follows WHERE creator = $1', BOB) == second
    assert await fetchval(service, 'SELECT count(*) FROM duplicate_records') == 0
    assert (await profile_counts(service, ALICE))['followers_count'] == 1
    assert service.queue.deleted == []


async def test_cascading_delete_drops_duplicates(service):
    first = f"at://{BOB}/app.bsky.graph.follow/f1"
    second = f"at://{BOB}/app.bsky.graph.follow/f2"
    await service.on_create(first, None, follow(ALICE))
    await service.on_create(second, None, follow(ALICE))

    await service.on_delete(first, cascading=True)

    assert await fetchval(service, 'SELECT count(*) FROM follows') == 0
    assert await fetchval(service, 'SELECT count(*) FROM duplicate_records') == 0
    assert (await profile_counts(service, ALICE))['followers_count'] == 0


async def test_update_changes_indexed_body(service):
    root = post_uri(ALICE, 'root')
    await service.on_create(root, None, post('before'))
    await service.on_update(root, None, post('after'))
    assert await fetchval(service, 'SELECT text FROM posts WHERE uri = $1', root) == 'after'
    assert (await profile_counts(service, ALICE))['posts_count'] == 1


async def test_thread_gate_allow_followers(service):
    root = post_uri(ALICE, 'root')
    await service.on_create(root, None, post('followers only'))
    await service.on_create(
        f"at://{ALICE}/app.bsky.feed.threadgate/root", None,
        thread_gate(root, {'$type': THREADGATE_FOLLOWER_RULE}),
    )
    await service.on_create(f"at://{BOB}/app.bsky.graph.follow/f1", None, follow(ALICE))

    allowed = post_uri(BOB, 'r1')
    blocked = post_uri(CAROL, 'r1')
    await service.on_create(allowed, None, post('follower', root=root))
    await service.on_create(blocked, None, post('stranger', root=root))

    assert await fetchval(service, 'SELECT violates_thread_gate FROM posts WHERE uri = $1', allowed) is not True
    assert await fetchval(service, 'SELECT violates_thread_gate FROM posts WHERE uri = $1', blocked) is True
    assert (await post_counts(service, root))['reply_count'] == 1


async def test_thread_gate_allow_list(service):
    root = post_uri(ALICE, 'root')
    friends = f"at://{ALICE}/app.bsky.graph.list/friends"
    await service.on_create(root, None, post('list only'))
    await service.on_create(friends, None, {
        '$type': 'app.bsky.graph.list', 'purpose': 'app.bsky.graph.defs#curatelist',
        'name': 'friends', 'createdAt': CREATED,
    })
    await service.on_create(f"at://{ALICE}/app.bsky.graph.listitem/i1", None, {
        '$type': 'app.bsky.graph.listitem', 'subject': CAROL, 'list': friends, 'createdAt': CREATED,
    })
    await service.on_create(
        f"at://{ALICE}/app.bsky.feed.threadgate/root", None,
        thread_gate(root, {'$type': THREADGATE_LIST_RULE, 'list': friends}),
    )

    allowed = post_uri(CAROL, 'r1')
    blocked = post_uri(BOB, 'r1')
    await service.on_create(allowed, None, post('member', root=root))
    await service.on_create(blocked, None, post('outsider', root=root))

    assert await fetchval(service, 'SELECT violates_thread_gate FROM posts WHERE uri = $1', allowed) is not True
    assert await fetchval(service, 'SELECT violates_thread_gate FROM posts WHERE uri = $1', blocked) is True
    reply_notifs = [n.record_uri for n in service.queue.notifications if n.reason == 'reply']
    assert reply_notifs == [allowed]


async def test_deleting_quote_post_removes_embeds_and_quote_count(service):
    root = post_uri(ALICE, 'root')
    quote = post_uri(BOB, 'quote')
    await service.on_create(root, None, post('original'))
    record = post('look at this')
    record['embed'] = {
        '$type': EMBED_RECORD_WITH_MEDIA,
        'record': {'$type': EMBED_RECORD, 'record': {'uri': root, 'cid': 'bafyroot'}},
        'media': {'$type': EMBED_IMAGES, 'images': [{
            'image': {'$type': 'blob', 'ref': {'$link': 'bafkreiimage'}, 'mimeType': 'image/jpeg', 'size': 10},
            'alt': 'a cat',
        }]},
    }
    await service.on_create(quote, None, record)

    assert (await post_counts(service, root))['quote_count'] == 1
    assert await fetchval(service, 'SELECT count(*) FROM post_embed_images WHERE post_uri = $1', quote) == 1
    assert [(n.did, n.reason) for n in service.queue.notifications] == [(ALICE, 'quote')]

    await service.on_delete(quote)

    assert (await post_counts(service, root))['quote_count'] == 0
    assert await fetchval(service, 'SELECT count(*) FROM quotes') == 0
    assert await fetchval(service, 'SELECT count(*) FROM post_embed_images') == 0
    assert await fetchval(service, 'SELECT count(*) FROM post_embed_records') == 0
    assert await fetchval(service, 'SELECT count(*) FROM feed_items WHERE post_uri = $1', quote) == 0
    assert quote in service.queue.deleted


async def test_like_and_repost_via_repost(service):
    root = post_uri(ALICE, 'root')
    bob_repost = f"at://{BOB}/app.bsky.feed.repost/rp1"
    await service.on_create(root, None, post('hello'))
    await service.on_create(bob_repost, None, repost(root))

    carol_like = f"at://{CAROL}/app.bsky.feed.like/l1"
    carol_repost = f"at://{CAROL}/app.bsky.feed.repost/rp1"
    await service.on_create(carol_like, None, like(root, via=bob_repost))
    await service.on_create(carol_repost, None, repost(root, via=bob_repost))

    def for_record(uri):
        return [(n.did, n.reason, n.reason_subject) for n in service.queue.notifications if n.record_uri == uri]

    assert for_record(carol_like) == [(ALICE, 'like', root), (BOB, 'like-via-repost', bob_repost)]
    assert for_record(carol_repost) == [(ALICE, 'repost', root), (BOB, 'repost-via-repost', bob_repost)]
    counts = await post_counts(service, root)
    assert counts['like_count'] == 1
    assert counts['repost_count'] == 2


async def test_verification_delete_notifies_unverified(service):
    verification = f"at://{ALICE}/app.bsky.graph.verification/v1"
    await service.on_create(verification, None, {
        '$type': 'app.bsky.graph.verification', 'subject': BOB,
        'handle': 'bob.test', 'displayName': 'Bob', 'createdAt': CREATED,
    })
    await service.on_delete(verification)

    assert [(n.did, n.author, n.reason) for n in service.queue.notifications] == [
        (BOB, ALICE, 'verified'),
        (BOB, ALICE, 'unverified'),
    ]
    assert service.queue.deleted == []


async def test_late_root_notifies_for_earlier_reply(service):
    root = post_uri(ALICE, 'root')
    r1 = post_uri(BOB, 'r1')
    await service.on_create(r1, None, post('reply', root=root))
    assert service.queue.notifications == []

    await service.on_create(root, None, post('root'))

    assert [(n.did, n.author, n.reason, n.record_uri) for n in service.queue.notifications] == [
        (ALICE, BOB, 'reply', r1),
    ]


async def test_late_parent_notifies_whole_thread_for_earlier_reply(service):
    root = post_uri(ALICE, 'root')
    mid = post_uri(CAROL, 'mid')
    late = post_uri(DAVE, 'late')
    await service.on_create(root, None, post('root'))
    await service.on_create(late, None, post('reply to mid', root=root, parent=mid))
    await service.on_create(mid, None, post('mid', root=root))

    for_late = [(n.did, n.reason_subject) for n in service.queue.notifications if n.record_uri == late]
    assert for_late == [(CAROL, mid), (ALICE, root)]
    for_mid = [(n.did, n.reason) for n in service.queue.notifications if n.record_uri == mid]
    assert for_mid == [(ALICE, 'reply')]


async def test_bulk_reply_before_root_matches_sequential(service):
    root = post_uri(ALICE, 'root')
    r1 = post_uri(BOB, 'r1')
    await service.on_create_bulk([
        {'uri': r1, 'record': post('reply', root=root)},
        {'uri': root, 'record': post('root')},
    ])

    assert await fetchval(service, 'SELECT invalid_reply_root FROM posts WHERE uri = $1', r1) is True
    assert [(n.did, n.record_uri) for n in service.queue.notifications] == [(ALICE, r1)]
