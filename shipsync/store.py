"""
Backing store access

Thin layer over SQLAlchemy Core that gives the sync services the handful
of primitives they need: batched upsert / insert / replace-by-key-list,
filtered selects with keyset paging, and conditional updates.

Every batch runs in its own transaction. A failed batch is reported in the
returned BatchResult and the remaining batches still run; nothing here
raises for a partial failure.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import func, select, update, delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from shipsync.config import get_settings
from shipsync.utils.helpers import chunk_list, utcnow
from shipsync.utils.logger import log

settings = get_settings()


@dataclass
class BatchResult:
    """Outcome of a batched write: rows written and one error string per failed batch."""
    success: int = 0
    errors: List[str] = field(default_factory=list)


class Store:
    """Batched read/write primitives over the relational store."""

    def __init__(self, engine: Optional[Engine] = None, batch_size: Optional[int] = None):
        if engine is None:
            from shipsync.models.base import engine as default_engine
            engine = default_engine
        self.engine = engine
        self.batch_size = batch_size or settings.batch_size

    # ─────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────

    def _insert(self, table):
        if self.engine.dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        return insert(table)

    @staticmethod
    def _normalize(records: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Give every record the same key set (executemany needs it)."""
        keys: List[str] = []
        seen = set()
        for record in records:
            for key in record:
                if key not in seen:
                    seen.add(key)
                    keys.append(key)
        return [{key: record.get(key) for key in keys} for record in records]

    @staticmethod
    def _dedupe(records: Sequence[Dict[str, Any]], conflict_cols: Sequence[str]) -> List[Dict[str, Any]]:
        """Keep the last record per conflict key; one statement can't touch a row twice."""
        by_key: Dict[tuple, Dict[str, Any]] = {}
        for record in records:
            by_key[tuple(record.get(c) for c in conflict_cols)] = record
        return list(by_key.values())

    def batch_upsert(
        self,
        model,
        records: Sequence[Dict[str, Any]],
        conflict_cols: Sequence[str],
        preserve_non_null: Sequence[str] = (),
    ) -> BatchResult:
        """
        Insert or update rows keyed by `conflict_cols`.

        Only columns present in the records are updated. Columns listed in
        `preserve_non_null` are written as COALESCE(incoming, existing), so a
        NULL in the incoming record never clears a stored value.
        """
        result = BatchResult()
        if not records:
            return result

        table = model.__table__
        rows = self._normalize(self._dedupe(records, conflict_cols))
        record_keys = set(rows[0].keys())

        for index, batch in enumerate(chunk_list(rows, self.batch_size), start=1):
            stmt = self._insert(table)
            excluded = stmt.excluded
            set_ = {}
            for col in table.columns:
                if col.primary_key or col.name in conflict_cols or col.name not in record_keys:
                    continue
                if col.name in preserve_non_null:
                    set_[col.name] = func.coalesce(excluded[col.name], table.c[col.name])
                else:
                    set_[col.name] = excluded[col.name]
            if set_ and "updated_at" in table.c and "updated_at" not in record_keys:
                set_["updated_at"] = utcnow()

            if set_:
                stmt = stmt.on_conflict_do_update(index_elements=list(conflict_cols), set_=set_)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_cols))

            try:
                with self.engine.begin() as conn:
                    conn.execute(stmt, batch)
                result.success += len(batch)
            except SQLAlchemyError as e:
                message = f"{table.name} batch {index}: {e.__class__.__name__}: {e}"
                log.error(f"[Store] Upsert failed - {message}")
                result.errors.append(message)

        return result

    def batch_insert(self, model, records: Sequence[Dict[str, Any]]) -> BatchResult:
        """Plain batched insert."""
        result = BatchResult()
        if not records:
            return result

        table = model.__table__
        rows = self._normalize(records)
        for index, batch in enumerate(chunk_list(rows, self.batch_size), start=1):
            try:
                with self.engine.begin() as conn:
                    conn.execute(table.insert(), batch)
                result.success += len(batch)
            except SQLAlchemyError as e:
                message = f"{table.name} batch {index}: {e.__class__.__name__}: {e}"
                log.error(f"[Store] Insert failed - {message}")
                result.errors.append(message)
        return result

    def replace_rows(self, model, column: str, keys: Iterable[Any], records: Sequence[Dict[str, Any]]) -> BatchResult:
        """
        Replace every row whose `column` is in `keys` with `records`.

        Delete and insert share one transaction per key batch, so a failed
        batch keeps its old rows. `success` counts inserted rows.
        """
        result = BatchResult()
        keys = list(keys)
        if not keys:
            return result

        table = model.__table__
        by_key: Dict[Any, List[Dict[str, Any]]] = {}
        for record in records:
            by_key.setdefault(record.get(column), []).append(record)

        for index, batch in enumerate(chunk_list(keys, self.batch_size), start=1):
            rows = self._normalize([r for key in batch for r in by_key.get(key, [])])
            try:
                with self.engine.begin() as conn:
                    conn.execute(delete(table).where(table.c[column].in_(batch)))
                    if rows:
                        conn.execute(table.insert(), rows)
                result.success += len(rows)
            except SQLAlchemyError as e:
                message = f"{table.name} replace batch {index}: {e.__class__.__name__}: {e}"
                log.error(f"[Store] Replace failed - {message}")
                result.errors.append(message)
        return result

    def update_where(self, model, values: Dict[str, Any], *criteria) -> int:
        """
        Conditional update. Returns the number of rows changed.

        Used for guarded writes such as `client_id IS NULL` or
        `deleted_at IS NULL`; raises on store errors so callers can count them.
        """
        table = model.__table__
        if "updated_at" in table.c and "updated_at" not in values:
            values = {**values, "updated_at": utcnow()}
        with self.engine.begin() as conn:
            changed = conn.execute(update(table).where(*criteria).values(**values))
        return changed.rowcount or 0

    # ─────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────

    def select(
        self,
        model,
        *criteria,
        columns: Optional[Sequence] = None,
        order_by: Optional[Sequence] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Filtered select returning plain dicts."""
        stmt = select(*columns) if columns else select(model.__table__)
        if criteria:
            stmt = stmt.where(*criteria)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings()]

    def select_in(
        self,
        model,
        column,
        values: Iterable[Any],
        *criteria,
        columns: Optional[Sequence] = None,
    ) -> List[Dict[str, Any]]:
        """Select rows where `column` is in `values`, chunked to keep IN lists bounded."""
        rows: List[Dict[str, Any]] = []
        for batch in chunk_list(list(values), self.batch_size):
            rows.extend(self.select(model, column.in_(batch), *criteria, columns=columns))
        return rows

    def iter_rows(
        self,
        model,
        *criteria,
        columns: Optional[Sequence] = None,
        page_size: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Keyset-paged scan ordered by primary key."""
        page_size = page_size or settings.lookup_page_size
        if columns and not any(c is model.id for c in columns):
            columns = [model.id, *columns]
        last_id = None
        while True:
            page_criteria = list(criteria)
            if last_id is not None:
                page_criteria.append(model.id > last_id)
            rows = self.select(
                model, *page_criteria, columns=columns, order_by=[model.id], limit=page_size
            )
            if not rows:
                break
            for row in rows:
                yield row
            last_id = rows[-1]["id"]
            if len(rows) < page_size:
                break
