# rfid_portal/spreadsheet.py
"""
Turn an uploaded table into an inventory snapshot.

- Reads the first sheet of .xlsx/.xls (pandas + openpyxl) or a .csv file.
  Row 1 is the header; every later row becomes one inventory item carrying
  `id` (1-based among kept rows), `row` (sheet row number) and its columns.
- Small tables (<= batch_size rows) are built and published in one step.
- Larger tables are built in fixed-size chunks. Each chunk is fully indexed
  in the builder before the next one starts, a progress event goes out per
  chunk, and the loop yields to the event loop between chunks. If the item
  count passes `max_items`, the oldest items are dropped (keep most recent).
- Only a completed load is published, in one swap. Each upload claims a
  generation before its file is parsed; a newer upload (or a clear) bumps
  it and the older load stops without publishing, however long its parse
  took.
- CSV lines with more fields than the header are skipped and counted in
  `dropped_rows`. Row numbers after a skipped line shift up by one.
- The published snapshot is written to the JSON cache off the event loop
  (best effort). Saves carry the index generation; an older one never
  overwrites a newer file.
"""

from __future__ import annotations
import asyncio
import datetime
import io
import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from . import events as ev
from .errors import LoadSuperseded, SpreadsheetError
from .inventory import (
    DEFAULT_MARKER,
    InventoryIndex,
    InventoryMetadata,
    InventorySnapshot,
    InventoryStore,
    SnapshotBuilder,
    detect_identifier_column,
)

log = logging.getLogger("portal.inventory")

EXCEL_SUFFIXES = {".xlsx", ".xlsm", ".xls"}
CSV_SUFFIXES = {".csv"}


# ---------- parsing ----------

def _cell(v: Any) -> Any:
    """Plain-Python cell value: None for blanks/NaN, ints for whole floats, ISO strings for dates."""
    if v is None:
        return None
    if isinstance(v, str):
        return v if v.strip() else None
    try:
        if pd.isna(v):
            return None
    except (TypeError, ValueError):
        pass
    if hasattr(v, "item") and not isinstance(v, (list, tuple, dict)):
        try:
            v = v.item()   # numpy scalar -> python
        except (AttributeError, ValueError):
            pass
    if isinstance(v, float) and math.isfinite(v) and v.is_integer():
        return int(v)
    if isinstance(v, (pd.Timestamp, datetime.datetime, datetime.date)):
        return v.isoformat()
    return v


def _header(v: Any) -> Optional[str]:
    c = _cell(v)
    if c is None:
        return None
    s = str(c).strip()
    return s or None


@dataclass
class ParsedTable:
    headers: List[Optional[str]]
    rows: List[List[Any]]
    bad_rows: int = 0     # CSV lines with more fields than the header, skipped by the parser


def read_table(data: bytes, file_name: str) -> ParsedTable:
    """Header row + data rows of the first sheet. Raises SpreadsheetError."""
    suffix = Path(file_name or "").suffix.lower()
    buf = io.BytesIO(data or b"")
    bad: List[List[str]] = []

    def skip_bad_line(fields: List[str]) -> None:
        bad.append(fields)
        log.warning("csv_row_dropped", extra={"file_name": file_name, "fields": len(fields)})
        return None

    try:
        if suffix in CSV_SUFFIXES:
            df = pd.read_csv(buf, header=None, dtype=object, keep_default_na=False,
                             engine="python", on_bad_lines=skip_bad_line)
        elif suffix in EXCEL_SUFFIXES:
            engine = "openpyxl" if suffix != ".xls" else None
            df = pd.read_excel(buf, sheet_name=0, header=None, dtype=object, engine=engine)
        else:
            raise SpreadsheetError(f"unsupported file type '{suffix or file_name}' (use .xlsx, .xls or .csv)")
    except SpreadsheetError:
        raise
    except Exception as e:
        raise SpreadsheetError(f"could not read {file_name}: {type(e).__name__}: {e}") from e

    if df.empty:
        raise SpreadsheetError("spreadsheet is empty or has no data")

    values = df.values.tolist()
    headers = [_header(h) for h in values[0]]
    if not any(headers):
        raise SpreadsheetError("first row has no column names")
    rows = [[_cell(c) for c in r] for r in values[1:]]
    return ParsedTable(headers, rows, bad_rows=len(bad))


def rows_to_fields(headers: Sequence[Optional[str]], rows: Sequence[Sequence[Any]],
                   *, first_row_index: int, next_id: int) -> Tuple[List[Dict[str, Any]], int]:
    """
    Map raw rows to item field dicts. Rows with no values are dropped.
    Returns (fields_list, dropped_count).
    """
    out: List[Dict[str, Any]] = []
    dropped = 0
    for offset, row in enumerate(rows):
        fields: Dict[str, Any] = {"id": next_id + len(out), "row": first_row_index + offset + 2}
        has_data = False
        for col, header in enumerate(headers):
            if not header or col >= len(row):
                continue
            value = row[col]
            if value is None:
                continue
            fields[header] = value
            has_data = True
        if has_data:
            out.append(fields)
        else:
            dropped += 1
    return out, dropped


# ---------- loader ----------

@dataclass
class LoadResult:
    snapshot: InventorySnapshot
    processed_in_batches: bool
    total_rows: int
    total_batches: int = 1
    dropped_rows: int = 0
    truncated_items: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "metadata": self.snapshot.metadata.as_dict(),
            "total_items": len(self.snapshot),
            "processed_in_batches": self.processed_in_batches,
            "total_rows": self.total_rows,
            "total_batches": self.total_batches,
            "dropped_rows": self.dropped_rows,
            "truncated_items": self.truncated_items,
        }


def _noop_emit(name: str, payload: Dict[str, Any]) -> None:
    return None


class BatchSpreadsheetLoader:
    def __init__(
        self,
        index: InventoryIndex,
        *,
        emit: Optional[ev.Emit] = None,
        store: Optional[InventoryStore] = None,
        batch_size: int = 1000,
        max_items: int = 50_000,
        marker: str = DEFAULT_MARKER,
        pause_s: float = 0.1,
        clock: Callable[[], float] = time.time,
    ):
        self.index = index
        self.emit = emit or _noop_emit
        self.store = store
        self.batch_size = max(1, int(batch_size))
        self.max_items = max(1, int(max_items))
        self.marker = marker
        self.pause_s = max(0.0, float(pause_s))
        self.clock = clock
        self._generation = 0
        self.active_file: Optional[str] = None

    @property
    def loading(self) -> bool:
        return self.active_file is not None

    def supersede(self) -> int:
        """Invalidate any in-flight load (parse or chunk loop)."""
        self._generation += 1
        return self._generation

    # ---------- entry points ----------

    def _claim(self, file_name: str) -> int:
        gen = self.supersede()
        self.active_file = file_name
        return gen

    def _release(self, gen: int) -> None:
        if gen == self._generation:
            self.active_file = None

    def _check(self, gen: int, file_name: str) -> None:
        if gen != self._generation:
            raise LoadSuperseded(file_name)

    async def load_bytes(self, data: bytes, file_name: str) -> LoadResult:
        # claimed before parsing: a later upload that parses faster still wins
        gen = self._claim(file_name)
        try:
            try:
                table = await asyncio.to_thread(read_table, data, file_name)
            except SpreadsheetError as e:
                log.warning("spreadsheet_rejected", extra={"file_name": file_name, "err": str(e)})
                self.emit(ev.INVENTORY_ERROR, {"file_name": file_name, "error": str(e)})
                raise
            return await self._run(gen, table.headers, table.rows, file_name, bad_rows=table.bad_rows)
        finally:
            self._release(gen)

    async def load_rows(self, headers: Sequence[Optional[str]], rows: Sequence[Sequence[Any]],
                        file_name: str) -> LoadResult:
        gen = self._claim(file_name)
        try:
            return await self._run(gen, headers, rows, file_name)
        finally:
            self._release(gen)

    async def _run(self, gen: int, headers, rows, file_name: str, bad_rows: int = 0) -> LoadResult:
        try:
            self._check(gen, file_name)
            if len(rows) > self.batch_size:
                res = await self._load_chunked(gen, headers, rows, file_name)
            else:
                res = await self._load_all_at_once(gen, headers, rows, file_name)
        except LoadSuperseded:
            log.info("spreadsheet_load_superseded", extra={"file_name": file_name})
            raise
        except Exception as e:
            log.exception("spreadsheet_load_failed", extra={"file_name": file_name})
            self.emit(ev.INVENTORY_ERROR, {"file_name": file_name, "error": str(e)})
            raise
        res.dropped_rows += bad_rows
        return res

    # ---------- paths ----------

    def _metadata(self, file_name: str, headers: Sequence[Optional[str]], column: Optional[str],
                  total_items: int) -> InventoryMetadata:
        upload = datetime.datetime.fromtimestamp(self.clock(), tz=datetime.timezone.utc)
        return InventoryMetadata(
            file_name=file_name,
            upload_date=upload.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            total_items=total_items,
            columns=tuple(h for h in headers if h),
            identifier_column=column,
        )

    async def _load_all_at_once(self, gen: int, headers, rows, file_name: str) -> LoadResult:
        column = detect_identifier_column([h for h in headers if h], self.marker)
        fields, dropped = rows_to_fields(headers, rows, first_row_index=0, next_id=1)
        builder = SnapshotBuilder(column, self.marker)
        builder.add_many(fields)
        truncated = builder.truncate(self.max_items)
        if truncated:
            self.emit(ev.INVENTORY_TRUNCATED, {"file_name": file_name, "dropped": truncated, "kept": len(builder)})

        self._check(gen, file_name)
        snap = builder.freeze(self._metadata(file_name, headers, column, len(builder)))
        await self._publish(snap)
        log.info("spreadsheet_loaded", extra={
            "file_name": file_name, "rows": len(rows), "items": len(snap),
            "dropped_rows": dropped, "identifier_column": column, "batched": False,
        })
        return LoadResult(snap, processed_in_batches=False, total_rows=len(rows),
                          dropped_rows=dropped, truncated_items=truncated)

    async def _load_chunked(self, gen: int, headers, rows, file_name: str) -> LoadResult:
        column = detect_identifier_column([h for h in headers if h], self.marker)
        total_rows = len(rows)
        total_batches = math.ceil(total_rows / self.batch_size)
        self.emit(ev.INVENTORY_STARTED, {
            "file_name": file_name,
            "total_rows": total_rows,
            "batch_size": self.batch_size,
            "total_batches": total_batches,
        })
        log.info("spreadsheet_chunked_start", extra={
            "file_name": file_name, "rows": total_rows, "batch_size": self.batch_size, "batches": total_batches,
        })

        builder = SnapshotBuilder(column, self.marker)
        next_id = 1
        dropped = truncated = 0
        for b in range(total_batches):
            self._check(gen, file_name)

            start = b * self.batch_size
            end = min(start + self.batch_size, total_rows)
            fields, d = rows_to_fields(headers, rows[start:end], first_row_index=start, next_id=next_id)
            next_id += len(fields)
            dropped += d
            builder.add_many(fields)

            cut = builder.truncate(self.max_items)
            if cut:
                truncated += cut
                log.info("inventory_truncated", extra={"file_name": file_name, "dropped": cut, "kept": len(builder)})
                self.emit(ev.INVENTORY_TRUNCATED, {"file_name": file_name, "dropped": cut, "kept": len(builder)})

            self.emit(ev.INVENTORY_PROGRESS, {
                "file_name": file_name,
                "batch_index": b + 1,
                "total_batches": total_batches,
                "processed_rows": end,
                "total_rows": total_rows,
                "items": len(builder),
                "percent": (end * 100) // total_rows,
            })

            if b < total_batches - 1:
                await asyncio.sleep(self.pause_s)

        self._check(gen, file_name)
        snap = builder.freeze(self._metadata(file_name, headers, column, len(builder)))
        await self._publish(snap, completed_extra={"total_batches": total_batches})
        log.info("spreadsheet_loaded", extra={
            "file_name": file_name, "rows": total_rows, "items": len(snap),
            "dropped_rows": dropped, "truncated": truncated, "identifier_column": column, "batched": True,
        })
        return LoadResult(snap, processed_in_batches=True, total_rows=total_rows, total_batches=total_batches,
                          dropped_rows=dropped, truncated_items=truncated)

    async def _publish(self, snap: InventorySnapshot, completed_extra: Optional[Dict[str, Any]] = None) -> None:
        self.index.publish(snap)
        version = self.index.generation
        payload = snap.as_payload()
        payload.update(completed_extra or {})
        self.emit(ev.INVENTORY_COMPLETED, payload)
        self.emit(ev.INVENTORY_UPDATED, {"metadata": snap.metadata.as_dict(), "total_items": len(snap)})
        await self._save(snap, version)

    async def _save(self, snap: InventorySnapshot, version: int) -> None:
        if self.store is not None:
            await asyncio.to_thread(self.store.save, snap, version)

    # ---------- maintenance ----------

    async def clear(self) -> None:
        self.supersede()
        self.active_file = None
        snap = InventorySnapshot.empty()
        self.index.publish(snap)
        version = self.index.generation
        self.emit(ev.INVENTORY_UPDATED, {"metadata": snap.metadata.as_dict(), "total_items": 0})
        log.info("inventory_cleared")
        await self._save(snap, version)

    async def restore(self) -> bool:
        """Publish the cached snapshot, if any. Never raises."""
        if self.store is None:
            return False
        snap = await asyncio.to_thread(self.store.load)
        if snap is None or self.index.generation:
            # nothing cached, or something was published while the file was read
            return False
        self.index.publish(snap)
        self.emit(ev.INVENTORY_UPDATED, {"metadata": snap.metadata.as_dict(), "total_items": len(snap)})
        return True
