"""
Record plugin contract.

A plugin owns one record collection and its primary table. Most record
kinds are a single row keyed by URI, so the base class implements insert,
bulk insert, delete and duplicate lookup generically from ``table``,
``columns`` and ``build_row``. Plugins with secondary state (posts, reposts,
thread gates) override the storage methods.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from ..bulk import BulkWriter
from ..errors import InvalidRecordError
from ..notifications import Notification, NotificationChanges
from ..nsid import Collection
from ..uris import AtUri
from ..util import EPOCH, get_path, normalize_datetime, sort_at

Row = Dict[str, Any]


@dataclass
class RecordInput:
    """One record to index"""

    uri: AtUri
    cid: str
    record: Dict[str, Any]
    timestamp: datetime


def to_row(record: Optional[asyncpg.Record]) -> Optional[Row]:
    return dict(record) if record is not None else None


def require(value: Any, uri: AtUri, what: str) -> Any:
    """Reject a record missing a required field"""
    if value is None or value == '':
        raise InvalidRecordError(f"{uri.collection} record is missing {what}", str(uri))
    return value


def require_uri(value: Any, uri: AtUri, what: str) -> str:
    """Reject a record whose reference is not a well-formed at:// URI"""
    require(value, uri, what)
    try:
        AtUri.parse(value)
    except InvalidRecordError:
        raise InvalidRecordError(f"{uri.collection} record has malformed {what}: {value!r}", str(uri))
    return value


def retract_unless_replaced(deleted: Row, replaced_by: Optional[Row]) -> NotificationChanges:
    """A promoted duplicate keeps the notifications already sent for the subject"""
    return NotificationChanges(to_delete=[] if replaced_by else [deleted['uri']])


class RecordPlugin:
    """Capabilities every record kind provides to the processor"""

    collection: Collection
    table: str = ''
    columns: Tuple[str, ...] = ()
    # Columns that identify the same semantic subject under a different URI
    duplicate_columns: Tuple[str, ...] = ()
    has_aggregates = False

    def __init__(self):
        self._writer: Optional[BulkWriter] = None

    # ===== Row building =====

    def validate(self, uri: AtUri, record: Dict[str, Any]) -> None:
        """Raise InvalidRecordError for records that can never be indexed"""

    def build_row(self, uri: AtUri, cid: str, record: Dict[str, Any], timestamp: datetime) -> Optional[Row]:
        """Column values for the primary table, or None to skip the record"""
        raise NotImplementedError

    def _values(self, row: Row) -> List[Any]:
        return [row.get(column) for column in self.columns]

    @property
    def writer(self) -> BulkWriter:
        if self._writer is None:
            self._writer = BulkWriter(self.table, self.columns)
        return self._writer

    # ===== Storage =====

    async def insert(
        self,
        conn: asyncpg.Connection,
        uri: AtUri,
        cid: str,
        record: Dict[str, Any],
        timestamp: datetime,
    ) -> Optional[Any]:
        self.validate(uri, record)
        row = self.build_row(uri, cid, record, timestamp)
        if row is None:
            return None
        placeholders = ', '.join(f'${i}' for i in range(1, len(self.columns) + 1))
        inserted = await conn.fetchrow(
            f"""
            INSERT INTO {self.table} ({', '.join(self.columns)})
            VALUES ({placeholders})
            ON CONFLICT DO NOTHING
            RETURNING *
            """,
            *self._values(row),
        )
        return to_row(inserted)

    async def insert_bulk(self, conn: asyncpg.Connection, items: Sequence[RecordInput]) -> List[Any]:
        """Insert many records, returning only the rows that were new"""
        rows = []
        for item in items:
            self.validate(item.uri, item.record)
            row = self.build_row(item.uri, item.cid, item.record, item.timestamp)
            if row is not None:
                rows.append(self._values(row))
        inserted = await self.writer.write(conn, rows)
        return [dict(r) for r in inserted]

    async def find_duplicate(self, conn: asyncpg.Connection, uri: AtUri, record: Dict[str, Any]) -> Optional[str]:
        """URI of an existing row for the same subject, if any"""
        if not self.duplicate_columns:
            return None
        self.validate(uri, record)
        row = self.build_row(uri, '', record, EPOCH)
        if row is None:
            return None
        where = ' AND '.join(f'{col} = ${i}' for i, col in enumerate(self.duplicate_columns, start=1))
        return await conn.fetchval(
            f'SELECT uri FROM {self.table} WHERE {where} LIMIT 1',
            *[row[col] for col in self.duplicate_columns],
        )

    async def delete(self, conn: asyncpg.Connection, uri: AtUri) -> Optional[Any]:
        deleted = await conn.fetchrow(
            f'DELETE FROM {self.table} WHERE uri = $1 RETURNING *',
            str(uri),
        )
        return to_row(deleted)

    def row_uri(self, row: Any) -> str:
        return row['uri']

    # ===== Notifications =====

    async def load_notification_context(self, conn: asyncpg.Connection, rows: List[Any]) -> None:
        """Fetch whatever notifications_for_insert needs beyond the row itself"""

    def notifications_for_insert(self, row: Any) -> List[Notification]:
        return []

    def notifications_for_delete(self, deleted: Any, replaced_by: Optional[Any]) -> NotificationChanges:
        return NotificationChanges()

    # ===== Aggregates =====

    async def update_aggregates(self, conn: asyncpg.Connection, row: Any) -> None:
        await self.update_aggregates_bulk(conn, [row])

    async def update_aggregates_bulk(self, conn: asyncpg.Connection, rows: List[Any]) -> None:
        pass

    def aggregate_subjects(self, rows: List[Any]) -> List[str]:
        """Aggregate keys touched by rows, reported when a recount fails"""
        return []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.collection}>"


def subject_ref(record: Dict[str, Any], uri: AtUri, what: str = 'subject') -> Tuple[str, str]:
    """(uri, cid) of a strong reference such as a like's subject"""
    subject_uri = require_uri(get_path(record, what, 'uri'), uri, f'{what}.uri')
    subject_cid = require(get_path(record, what, 'cid'), uri, f'{what}.cid')
    return subject_uri, subject_cid


def timestamps(record: Dict[str, Any], timestamp: datetime) -> Dict[str, datetime]:
    """created_at / indexed_at / sort_at columns for a record"""
    created_at = normalize_datetime(record.get('createdAt'))
    return {
        'created_at': created_at,
        'indexed_at': timestamp,
        'sort_at': sort_at(created_at, timestamp),
    }


def optional_ref(record: Dict[str, Any], what: str) -> Tuple[Optional[str], Optional[str]]:
    """(uri, cid) of an optional strong reference, (None, None) when absent or malformed"""
    ref_uri = get_path(record, what, 'uri')
    if not ref_uri:
        return None, None
    try:
        AtUri.parse(ref_uri)
    except InvalidRecordError:
        return None, None
    return ref_uri, get_path(record, what, 'cid')
