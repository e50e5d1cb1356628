"""
Columnar bulk insert through PostgreSQL COPY.

Rows are streamed with ``copy_records_to_table`` into a temporary table shaped
like the target, then moved across with ``INSERT ... ON CONFLICT DO NOTHING
RETURNING *``. Callers therefore get back only the rows that were actually
inserted, exactly like the single-row path.
"""

import logging
import uuid
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import asyncpg

logger = logging.getLogger(__name__)


class BulkWriter:
    """Typed bulk writer for one table and a fixed column list"""

    def __init__(self, table: str, columns: Sequence[str], returning: bool = True):
        if not columns:
            raise ValueError("BulkWriter needs at least one column")
        self.table = table
        self.columns: Tuple[str, ...] = tuple(columns)
        self.returning = returning

    def _temp_name(self) -> str:
        return f"bulk_{self.table}_{uuid.uuid4().hex[:12]}"

    async def write(
        self,
        conn: asyncpg.Connection,
        rows: Iterable[Sequence[Any]],
    ) -> List[asyncpg.Record]:
        """
        Load rows, skipping any that conflict with an existing row.

        Returns the inserted rows (all columns) when ``returning`` is set,
        otherwise an empty list.
        """
        records = [tuple(row) for row in rows]
        if not records:
            return []

        width = len(self.columns)
        for row in records:
            if len(row) != width:
                raise ValueError(
                    f"Row for {self.table} has {len(row)} values, expected {width}"
                )

        tmp = self._temp_name()
        column_list = ', '.join(self.columns)

        await conn.execute(
            f"CREATE TEMP TABLE {tmp} (LIKE {self.table} INCLUDING DEFAULTS)"
        )
        await conn.copy_records_to_table(tmp, records=records, columns=list(self.columns))

        sql = (
            f"INSERT INTO {self.table} ({column_list}) "
            f"SELECT {column_list} FROM {tmp} "
            "ON CONFLICT DO NOTHING"
        )
        if self.returning:
            inserted = await conn.fetch(sql + " RETURNING *")
        else:
            await conn.execute(sql)
            inserted = []

        await conn.execute(f"DROP TABLE {tmp}")

        logger.debug(
            f"[BULK] {self.table}: copied {len(records)} rows, inserted "
            f"{len(inserted) if self.returning else 'n/a'}"
        )
        return inserted


def chunked(items: Sequence[Any], size: Optional[int]) -> Iterable[Sequence[Any]]:
    """Split a sequence into consecutive chunks of at most ``size`` items"""
    if not size or size <= 0:
        if items:
            yield items
        return
    for start in range(0, len(items), size):
        yield items[start:start + size]
