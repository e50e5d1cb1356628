"""
AT Protocol AppView record indexer

Indexes posts, likes, follows, reposts, lists, profiles and the other
app.bsky records into PostgreSQL, keeping feed items, thread flags,
aggregate counters and notifications consistent with the indexed rows.
"""

__version__ = "0.1.0"
