"""Chunked merge-upsert of normalized rows into the row store."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from subintel.store import RowStore, StoreError

log = logging.getLogger(__name__)

CHUNK_SIZE = 500
KEY_SEPARATOR = "|:|"


@dataclass
class UpsertResult:
    imported: int = 0
    skipped: int = 0

    def __iadd__(self, other: UpsertResult) -> UpsertResult:
        self.imported += other.imported
        self.skipped += other.skipped
        return self


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def conflict_key(row: dict[str, Any], conflict_columns: Sequence[str]) -> str:
    return KEY_SEPARATOR.join("" if row.get(c) is None else str(row.get(c)) for c in conflict_columns)


def deduplicate_by_conflict_key(
    rows: list[dict[str, Any]], conflict_columns: Sequence[str],
) -> list[dict[str, Any]]:
    """Collapse rows sharing a conflict key.

    The first row seeds the merged record.  Later rows add their numbers onto
    numbers already present and overwrite everything else with any non-null
    value.
    """
    merged: dict[str, dict[str, Any]] = {}
    for row in rows:
        key = conflict_key(row, conflict_columns)
        existing = merged.get(key)
        if existing is None:
            merged[key] = dict(row)
            continue
        for k, v in row.items():
            if k in conflict_columns:
                continue
            if _is_number(v) and _is_number(existing.get(k)):
                existing[k] += v
            elif v is not None:
                existing[k] = v
    return list(merged.values())


def upsert_chunked(
    store: RowStore,
    table: str,
    rows: list[dict[str, Any]],
    conflict_columns: Sequence[str],
    chunk_size: int = CHUNK_SIZE,
) -> UpsertResult:
    """Upsert ``rows`` in chunks; a failing chunk is counted as skipped and the rest continue."""
    result = UpsertResult()
    columns = list(conflict_columns)
    for start in range(0, len(rows), chunk_size):
        chunk = deduplicate_by_conflict_key(rows[start:start + chunk_size], columns)
        try:
            ids = store.upsert(table, chunk, columns)
        except StoreError as exc:
            log.warning("Upsert into %s failed for rows %d-%d: %s",
                        table, start, start + len(chunk) - 1, exc.message)
            result.skipped += len(chunk)
            continue
        result.imported += len(ids) if ids else len(chunk)
    return result
