import json
from unittest.mock import AsyncMock

import pytest

from appview_indexer.notifications import (
    DatabaseNotificationQueue,
    Notification,
    NotificationChanges,
    NullNotificationQueue,
    RedisNotificationQueue,
    dedupe_notifications,
    make_notification_queue,
)
from appview_indexer.plugins.post import IndexedPost, post_notifications

from .conftest import ALICE, BOB, CAROL, FakePool, T0

DAVE = "did:plc:dave"
ROOT = f"at://{ALICE}/app.bsky.feed.post/root"
MID = f"at://{CAROL}/app.bsky.feed.post/mid"
NEW = f"at://{BOB}/app.bsky.feed.post/new"


def post_row(uri, creator, **flags):
    return {'uri': uri, 'cid': 'bafypost', 'creator': creator, 'sort_at': T0, **flags}


def notif(did, reason='like', record_uri='at://did:plc:x/app.bsky.feed.like/1', subject=None):
    return Notification(did=did, author=BOB, reason=reason, record_uri=record_uri,
                        record_cid='c', sort_at=T0, reason_subject=subject)


def reasons(notifs):
    return [(n.did, n.reason) for n in notifs]


def test_reply_notifies_each_ancestor_author_once():
    indexed = IndexedPost(
        post=post_row(NEW, BOB, reply_parent=MID, reply_root=ROOT),
        ancestors=[
            {'uri': NEW, 'height': 0},
            {'uri': MID, 'height': 1},
            {'uri': ROOT, 'height': 2},
        ],
    )
    assert reasons(post_notifications(indexed)) == [(CAROL, 'reply'), (ALICE, 'reply')]


def test_reply_notifications_stop_at_depth():
    indexed = IndexedPost(
        post=post_row(NEW, BOB),
        ancestors=[{'uri': NEW, 'height': 0}, {'uri': MID, 'height': 1}, {'uri': ROOT, 'height': 2}],
    )
    assert reasons(post_notifications(indexed, reply_notif_depth=2)) == [(CAROL, 'reply')]


def test_hidden_reply_stops_propagation():
    indexed = IndexedPost(
        post=post_row(NEW, BOB),
        ancestors=[{'uri': NEW, 'height': 0}, {'uri': MID, 'height': 1}, {'uri': ROOT, 'height': 2}],
        threadgate={'hiddenReplies': [MID]},
    )
    assert reasons(post_notifications(indexed)) == [(CAROL, 'reply')]


@pytest.mark.parametrize('flag', ['violates_thread_gate', 'invalid_reply_root'])
def test_rejected_replies_notify_no_one_upstream(flag):
    indexed = IndexedPost(
        post=post_row(NEW, BOB, **{flag: True}),
        ancestors=[{'uri': NEW, 'height': 0}, {'uri': ROOT, 'height': 1}],
    )
    assert post_notifications(indexed) == []


def test_mentions_and_quotes_are_deduplicated_per_recipient():
    indexed = IndexedPost(
        post=post_row(NEW, BOB),
        facets=[('mention', ALICE), ('mention', ALICE), ('mention', BOB), ('link', 'https://x')],
        embeds=[{'kind': 'record', 'embed_uri': ROOT, 'embed_cid': 'c', 'rows': []}],
    )
    # ALICE already notified by the mention; BOB is the author
    assert reasons(post_notifications(indexed)) == [(ALICE, 'mention')]


def test_quote_notification():
    indexed = IndexedPost(
        post=post_row(NEW, BOB),
        embeds=[{'kind': 'record', 'embed_uri': ROOT, 'embed_cid': 'c', 'rows': []}],
    )
    notifs = post_notifications(indexed)
    assert reasons(notifs) == [(ALICE, 'quote')]
    assert notifs[0].reason_subject == ROOT


def test_quote_blocked_by_post_gate_is_silent():
    indexed = IndexedPost(
        post=post_row(NEW, BOB, violates_embedding_rules=True),
        embeds=[{'kind': 'record', 'embed_uri': ROOT, 'embed_cid': 'c', 'rows': []}],
    )
    assert post_notifications(indexed) == []


def test_late_root_notifies_for_earlier_reply():
    # BOB replied before ALICE's root was indexed
    reply_uri = f"at://{BOB}/app.bsky.feed.post/early"
    indexed = IndexedPost(
        post=post_row(ROOT, ALICE),
        ancestors=[{'uri': ROOT, 'height': 0}],
        descendants=[{'uri': reply_uri, 'depth': 1, 'cid': 'c', 'creator': BOB, 'sort_at': T0}],
    )
    notifs = post_notifications(indexed)
    assert reasons(notifs) == [(ALICE, 'reply')]
    assert notifs[0].record_uri == reply_uri
    assert notifs[0].author == BOB
    assert notifs[0].reason_subject == ROOT


def test_late_parent_notifies_itself_and_thread_for_earlier_reply():
    # DAVE replied to MID before MID was indexed
    reply_uri = f"at://{DAVE}/app.bsky.feed.post/late"
    indexed = IndexedPost(
        post=post_row(MID, CAROL),
        ancestors=[{'uri': MID, 'height': 0}, {'uri': ROOT, 'height': 1}],
        descendants=[{'uri': reply_uri, 'depth': 1, 'cid': 'c', 'creator': DAVE, 'sort_at': T0}],
    )
    notifs = post_notifications(indexed)
    assert [(n.did, n.record_uri) for n in notifs] == [
        (ALICE, MID),
        (CAROL, reply_uri),
        (ALICE, reply_uri),
    ]
    assert all(n.reason == 'reply' for n in notifs)


def test_earlier_reply_author_is_not_notified_of_own_reply():
    reply_uri = f"at://{ALICE}/app.bsky.feed.post/self"
    indexed = IndexedPost(
        post=post_row(MID, CAROL),
        ancestors=[{'uri': MID, 'height': 0}, {'uri': ROOT, 'height': 1}],
        descendants=[{'uri': reply_uri, 'depth': 1, 'cid': 'c', 'creator': ALICE, 'sort_at': T0}],
    )
    assert [(n.did, n.record_uri) for n in post_notifications(indexed)] == [(ALICE, MID), (CAROL, reply_uri)]


def test_earlier_reply_notified_once_per_recipient():
    # ALICE wrote both the root and MID
    mid = f"at://{ALICE}/app.bsky.feed.post/mid"
    reply_uri = f"at://{DAVE}/app.bsky.feed.post/late"
    indexed = IndexedPost(
        post=post_row(mid, ALICE),
        ancestors=[{'uri': mid, 'height': 0}, {'uri': ROOT, 'height': 1}],
        descendants=[{'uri': reply_uri, 'depth': 1, 'cid': 'c', 'creator': DAVE, 'sort_at': T0}],
    )
    assert [(n.did, n.record_uri) for n in post_notifications(indexed)] == [(ALICE, reply_uri)]


def test_earlier_gate_violating_reply_stays_silent():
    reply_uri = f"at://{DAVE}/app.bsky.feed.post/late"
    indexed = IndexedPost(
        post=post_row(ROOT, ALICE),
        ancestors=[{'uri': ROOT, 'height': 0}],
        descendants=[{'uri': reply_uri, 'depth': 1, 'cid': 'c', 'creator': DAVE, 'sort_at': T0,
                      'violates_thread_gate': True}],
    )
    assert post_notifications(indexed) == []


def test_earlier_replies_respect_depth():
    deep = f"at://{DAVE}/app.bsky.feed.post/deep"
    indexed = IndexedPost(
        post=post_row(MID, CAROL),
        ancestors=[{'uri': MID, 'height': 0}, {'uri': ROOT, 'height': 1}],
        descendants=[{'uri': deep, 'depth': 2, 'cid': 'c', 'creator': DAVE, 'sort_at': T0}],
    )
    notifs = post_notifications(indexed, reply_notif_depth=3)
    assert [(n.did, n.record_uri) for n in notifs] == [(ALICE, MID), (CAROL, deep)]


def test_dedupe_keeps_first_per_key():
    first = notif(ALICE)
    assert dedupe_notifications([first, notif(ALICE), notif(CAROL)]) == [first, notif(CAROL)]


def test_changes_deduplicated():
    changes = NotificationChanges(notifications=[notif(ALICE), notif(ALICE)], to_delete=['a', 'a', 'b'])
    deduped = changes.deduplicated()
    assert len(deduped.notifications) == 1
    assert deduped.to_delete == ['a', 'b']
    assert NotificationChanges().is_empty()


def test_to_dict_is_json_ready():
    data = notif(ALICE, subject=ROOT).to_dict()
    assert data['reasonSubject'] == ROOT
    assert data['sortAt'] == T0.isoformat()
    json.dumps(data)


async def test_database_queue_deletes_then_inserts():
    pool = FakePool()
    queue = DatabaseNotificationQueue(pool)
    await queue.publish(NotificationChanges(notifications=[notif(ALICE)], to_delete=['at://old']))

    assert 'DELETE FROM notifications' in pool.conn.sql('execute')[0]
    assert pool.conn.execute.call_args.args[1] == ['at://old']
    rows = pool.conn.executemany.call_args.args[1]
    assert rows[0][0] == ALICE
    assert rows[0][4] == 'like'


async def test_empty_changes_are_not_published():
    pool = FakePool()
    await DatabaseNotificationQueue(pool).publish(NotificationChanges())
    assert pool.transactions == 0


async def test_queue_failure_is_logged_not_raised(caplog):
    pool = FakePool()
    pool.conn.executemany.side_effect = OSError("connection reset")
    await DatabaseNotificationQueue(pool).publish(NotificationChanges(notifications=[notif(ALICE)]))
    assert "[NOTIFY] Failed to publish" in caplog.text


async def test_redis_queue_stream_entries():
    queue = RedisNotificationQueue(stream_key='test:notifications', max_stream_len=100)
    queue.redis = AsyncMock()
    await queue.publish(NotificationChanges(notifications=[notif(ALICE)], to_delete=['at://old']))

    calls = queue.redis.xadd.call_args_list
    assert [c.args[1]['type'] for c in calls] == ['notification-delete', 'notification']
    assert json.loads(calls[0].args[1]['data']) == {'recordUris': ['at://old']}
    assert json.loads(calls[1].args[1]['data'])['did'] == ALICE
    assert calls[1].kwargs == {'maxlen': 100, 'approximate': True}


def test_make_notification_queue():
    assert isinstance(make_notification_queue('none'), NullNotificationQueue)
    assert isinstance(make_notification_queue('database', FakePool()), DatabaseNotificationQueue)
    assert isinstance(make_notification_queue('redis', redis_url='redis://x'), RedisNotificationQueue)
    with pytest.raises(ValueError):
        make_notification_queue('database')
    with pytest.raises(ValueError):
        make_notification_queue('kafka')
