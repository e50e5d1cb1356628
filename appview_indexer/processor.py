"""
Record processor.

Drives plugins through create, update and delete. Each operation runs its
row changes in one transaction; notifications are handed to the queue and
aggregates are recounted after that transaction commits.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from .bulk import BulkWriter, chunked
from .database import DatabasePool
from .errors import AggregateMaintenanceError, UpdateFailedError
from .notifications import NotificationChanges, NotificationQueue
from .plugins import PluginRegistry, RecordInput, RecordPlugin
from .uris import AtUri
from .util import from_json, to_json

logger = logging.getLogger(__name__)

RECORD_COLUMNS = ('uri', 'cid', 'did', 'json', 'indexed_at')
DUPLICATE_COLUMNS = ('uri', 'cid', 'duplicate_of', 'indexed_at')


@dataclass
class BulkResult:
    """Outcome of one create_bulk call"""

    received: int = 0
    indexed: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    duplicates: int = 0
    notifications: int = 0

    @property
    def total_indexed(self) -> int:
        return sum(self.indexed.values())

    @property
    def skipped(self) -> int:
        return self.received - self.total_indexed - self.duplicates


class RecordProcessor:
    """Generic create/update/delete lifecycle over the plugin registry"""

    def __init__(
        self,
        pool: DatabasePool,
        registry: PluginRegistry,
        queue: NotificationQueue,
        bulk_batch_size: int = 5000,
    ):
        self.pool = pool
        self.registry = registry
        self.queue = queue
        self.bulk_batch_size = bulk_batch_size
        self.record_writer = BulkWriter('records', RECORD_COLUMNS, returning=False)
        self.duplicate_writer = BulkWriter('duplicate_records', DUPLICATE_COLUMNS, returning=False)

    # ===== Bookkeeping =====

    async def _insert_record_row(self, conn: asyncpg.Connection, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime):
        await conn.execute(
            """
            INSERT INTO records (uri, cid, did, json, indexed_at)
            VALUES ($1, $2, $3, $4::jsonb, $5)
            ON CONFLICT (uri) DO NOTHING
            """,
            str(uri), cid, uri.host, to_json(record), timestamp,
        )

    async def _insert_duplicate(self, conn: asyncpg.Connection, uri: AtUri, cid: str, duplicate_of: str, timestamp: datetime):
        await conn.execute(
            """
            INSERT INTO duplicate_records (uri, cid, duplicate_of, indexed_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (uri) DO NOTHING
            """,
            str(uri), cid, duplicate_of, timestamp,
        )
        logger.debug(f"[DUPLICATE] {uri} duplicates {duplicate_of}")

    async def _run_aggregates(self, plugin: RecordPlugin, rows: List[Any]) -> None:
        """Recount counters after commit, on a fresh connection"""
        rows = [r for r in rows if r is not None]
        if not plugin.has_aggregates or not rows:
            return
        try:
            async with self.pool.acquire() as conn:
                if len(rows) == 1:
                    await plugin.update_aggregates(conn, rows[0])
                else:
                    await plugin.update_aggregates_bulk(conn, rows)
        except (asyncpg.PostgresError, OSError) as e:
            subjects = plugin.aggregate_subjects(rows)
            logger.error(
                f"[AGGREGATES] Recount failed for {plugin.collection} ({len(set(subjects))} subjects): {e}",
                exc_info=True,
            )
            raise AggregateMaintenanceError(str(plugin.collection), subjects) from e

    # ===== Create =====

    async def _create_in_txn(
        self,
        conn: asyncpg.Connection,
        plugin: RecordPlugin,
        uri: AtUri,
        cid: str,
        record: Dict[str, Any],
        timestamp: datetime,
        disable_notifications: bool,
    ) -> Tuple[Optional[Any], NotificationChanges]:
        await self._insert_record_row(conn, uri, cid, record, timestamp)

        # First writer wins: a second record for the same subject is remembered, not indexed
        duplicate_of = await plugin.find_duplicate(conn, uri, record)
        if duplicate_of and duplicate_of != str(uri):
            await self._insert_duplicate(conn, uri, cid, duplicate_of, timestamp)
            return None, NotificationChanges()

        inserted = await plugin.insert(conn, uri, cid, record, timestamp)
        if inserted is None:
            # Either already indexed, or a concurrent writer took the subject
            duplicate_of = await plugin.find_duplicate(conn, uri, record)
            if duplicate_of and duplicate_of != str(uri):
                await self._insert_duplicate(conn, uri, cid, duplicate_of, timestamp)
            return None, NotificationChanges()

        if disable_notifications:
            return inserted, NotificationChanges()
        return inserted, NotificationChanges(notifications=plugin.notifications_for_insert(inserted))

    async def create(
        self,
        uri: AtUri,
        cid: str,
        record: Dict[str, Any],
        timestamp: datetime,
        disable_notifications: bool = False,
    ) -> Optional[Any]:
        """Index one record; returns the indexed row, or None when nothing new was indexed"""
        plugin = self.registry.for_uri(uri)
        plugin.validate(uri, record)

        async with self.pool.transaction() as conn:
            inserted, changes = await self._create_in_txn(
                conn, plugin, uri, cid, record, timestamp, disable_notifications
            )

        if inserted is None:
            logger.debug(f"[INDEXER] {uri} not indexed (already present or duplicate)")
            return None

        logger.debug(f"[INDEXER] Indexed {uri}")
        await self.queue.publish(changes)
        await self._run_aggregates(plugin, [inserted])
        return inserted

    # ===== Update =====

    async def update(
        self,
        uri: AtUri,
        cid: str,
        record: Dict[str, Any],
        timestamp: datetime,
        disable_notifications: bool = False,
    ) -> Optional[Any]:
        """Replace an indexed record with a new revision"""
        plugin = self.registry.for_uri(uri)
        plugin.validate(uri, record)
        affected: List[Any] = []

        async with self.pool.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO records (uri, cid, did, json, indexed_at)
                VALUES ($1, $2, $3, $4::jsonb, $5)
                ON CONFLICT (uri) DO UPDATE
                SET cid = EXCLUDED.cid, json = EXCLUDED.json, indexed_at = EXCLUDED.indexed_at
                """,
                str(uri), cid, uri.host, to_json(record), timestamp,
            )

            duplicate_of = await plugin.find_duplicate(conn, uri, record)
            if duplicate_of and duplicate_of != str(uri):
                await conn.execute(
                    'UPDATE duplicate_records SET cid = $2, duplicate_of = $3, indexed_at = $4 WHERE uri = $1',
                    str(uri), cid, duplicate_of, timestamp,
                )
            else:
                await conn.execute('DELETE FROM duplicate_records WHERE uri = $1', str(uri))

            deleted = await plugin.delete(conn, uri)
            if deleted is None:
                # Never indexed: treat as a plain create
                inserted, changes = await self._create_in_txn(
                    conn, plugin, uri, cid, record, timestamp, disable_notifications
                )
                affected.append(inserted)
            else:
                affected.append(deleted)
                inserted = await plugin.insert(conn, uri, cid, record, timestamp)
                if inserted is None:
                    raise UpdateFailedError(str(uri))
                affected.append(inserted)
                if disable_notifications:
                    changes = NotificationChanges()
                else:
                    changes = plugin.notifications_for_delete(deleted, inserted)

        logger.debug(f"[INDEXER] Updated {uri}")
        await self.queue.publish(changes)
        await self._run_aggregates(plugin, affected)
        return inserted

    # ===== Delete =====

    async def delete(self, uri: AtUri, cascading: bool = False) -> Optional[Any]:
        """
        Remove a record from the index.

        When other records were suppressed as duplicates of this one, the
        oldest is promoted and takes its place, unless ``cascading`` is set
        (the whole repo is going away) in which case they are dropped.
        """
        plugin = self.registry.for_uri(uri)
        uri_str = str(uri)
        affected: List[Any] = []

        async with self.pool.transaction() as conn:
            await conn.execute('DELETE FROM records WHERE uri = $1', uri_str)
            await conn.execute('DELETE FROM duplicate_records WHERE uri = $1', uri_str)

            deleted = await plugin.delete(conn, uri)
            if deleted is None:
                logger.debug(f"[INDEXER] {uri} was not indexed, nothing to delete")
                return None
            affected.append(deleted)

            replaced_by = None
            if cascading:
                await conn.execute('DELETE FROM duplicate_records WHERE duplicate_of = $1', uri_str)
            else:
                replaced_by = await self._promote_duplicate(conn, plugin, uri_str)
                if replaced_by is not None:
                    affected.append(replaced_by)

            changes = plugin.notifications_for_delete(deleted, replaced_by)

        logger.debug(f"[INDEXER] Deleted {uri}")
        await self.queue.publish(changes)
        await self._run_aggregates(plugin, affected)
        return deleted

    async def _promote_duplicate(self, conn: asyncpg.Connection, plugin: RecordPlugin, uri: str) -> Optional[Any]:
        found = await conn.fetchrow(
            """
            SELECT d.uri, d.cid, d.indexed_at, r.json
            FROM duplicate_records d
            JOIN records r ON r.uri = d.uri
            WHERE d.duplicate_of = $1
            ORDER BY d.indexed_at ASC
            LIMIT 1
            """,
            uri,
        )
        if found is None:
            return None

        promoted_uri = AtUri.parse(found['uri'])
        promoted = await plugin.insert(conn, promoted_uri, found['cid'], from_json(found['json']), found['indexed_at'])
        await conn.execute('DELETE FROM duplicate_records WHERE uri = $1', found['uri'])
        await conn.execute(
            'UPDATE duplicate_records SET duplicate_of = $2 WHERE duplicate_of = $1',
            uri, found['uri'],
        )
        logger.info(f"[DUPLICATE] Promoted {found['uri']} to replace {uri}")
        return promoted

    # ===== Bulk =====

    async def create_bulk(self, items: Sequence[RecordInput], disable_notifications: bool = False) -> BulkResult:
        """
        Index a closed batch of records.

        Ends in the same state as creating each record in turn. Counters are
        recounted once per plugin after every chunk has committed.
        """
        result = BulkResult(received=len(items))
        if not items:
            return result

        # Validate everything before writing anything
        grouped: Dict[Any, List[RecordInput]] = defaultdict(list)
        for item in items:
            plugin = self.registry.for_uri(item.uri)
            plugin.validate(item.uri, item.record)
            grouped[plugin.collection].append(item)

        for chunk in chunked(items, self.bulk_batch_size):
            async with self.pool.transaction() as conn:
                await self.record_writer.write(conn, [
                    (str(i.uri), i.cid, i.uri.host, to_json(i.record), i.timestamp) for i in chunk
                ])

        changes = NotificationChanges()
        inserted_by_plugin: List[Tuple[RecordPlugin, List[Any]]] = []

        for plugin in self.registry.in_bulk_order():
            plugin_items = grouped.get(plugin.collection)
            if not plugin_items:
                continue
            plugin_rows: List[Any] = []
            for chunk in chunked(plugin_items, self.bulk_batch_size):
                async with self.pool.transaction() as conn:
                    rows = await plugin.insert_bulk(conn, chunk)
                    result.duplicates += await self._record_bulk_duplicates(conn, plugin, chunk, rows)
                    if rows and not disable_notifications:
                        await plugin.load_notification_context(conn, rows)
                        for row in rows:
                            changes.notifications.extend(plugin.notifications_for_insert(row))
                plugin_rows.extend(rows)
            result.indexed[str(plugin.collection)] += len(plugin_rows)
            inserted_by_plugin.append((plugin, plugin_rows))
            logger.info(f"[BULK] {plugin.collection}: {len(plugin_rows)}/{len(plugin_items)} indexed")

        changes = changes.deduplicated()
        result.notifications = len(changes.notifications)
        await self.queue.publish(changes)

        # Every plugin gets its recount even when an earlier one fails
        failures: List[AggregateMaintenanceError] = []
        for plugin, rows in inserted_by_plugin:
            try:
                await self._run_aggregates(plugin, rows)
            except AggregateMaintenanceError as e:
                failures.append(e)
        if failures:
            raise AggregateMaintenanceError(
                ', '.join(e.collection for e in failures),
                [subject for e in failures for subject in e.subjects],
            ) from failures[0]

        logger.info(
            f"[BULK] Indexed {result.total_indexed}/{result.received} records "
            f"({result.duplicates} duplicates, {result.notifications} notifications)"
        )
        return result

    async def _record_bulk_duplicates(
        self,
        conn: asyncpg.Connection,
        plugin: RecordPlugin,
        chunk: Sequence[RecordInput],
        rows: List[Any],
    ) -> int:
        if not plugin.duplicate_columns:
            return 0
        inserted_uris = {plugin.row_uri(row) for row in rows}
        duplicates = []
        for item in chunk:
            uri = str(item.uri)
            if uri in inserted_uris:
                continue
            duplicate_of = await plugin.find_duplicate(conn, item.uri, item.record)
            if duplicate_of and duplicate_of != uri:
                duplicates.append((uri, item.cid, duplicate_of, item.timestamp))
        await self.duplicate_writer.write(conn, duplicates)
        return len(duplicates)
