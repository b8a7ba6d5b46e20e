"""
Inventory snapshot, its identifier index and the on-disk cache.

Design notes
------------
- An InventorySnapshot is immutable once built: items are a tuple, the index
  is a read-only mapping of normalized key -> tuple of items.
- InventoryIndex holds exactly one published snapshot. Publishing swaps a
  single reference under a lock; readers grab the reference once per lookup,
  so they see the old snapshot or the new one, never a mix.
- SnapshotBuilder is the "under construction" side used by the chunked
  loader: every add_many() call indexes that chunk completely before
  returning. Nothing is visible to matchers until freeze() + publish().
- The cache file is JSON: {"items": [...], "metadata": {...}}. Reading a
  missing or corrupt file is not an error; the caller starts empty.
"""

from __future__ import annotations
import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .readings import normalize_key

log = logging.getLogger("portal.inventory")

DEFAULT_MARKER = "uhf"
RESERVED_FIELDS = ("id", "row")


# ---------- identifier column detection ----------

def _matches_marker(name: Any, marker: str) -> bool:
    if name is None:
        return False
    k = str(name).strip().lower()
    m = marker.strip().lower()
    return bool(k) and (k == m or m in k)


def detect_identifier_column(headers: Sequence[Any], marker: str = DEFAULT_MARKER) -> Optional[str]:
    """First header equal to, or containing, `marker` (case-insensitive)."""
    for h in headers or ():
        if _matches_marker(h, marker):
            return str(h)
    return None


def resolve_item_key(fields: Mapping[str, Any], column: Optional[str], marker: str = DEFAULT_MARKER) -> str:
    """
    Normalized identifier for one row. Uses `column` when the row has a value
    there, else the first field whose own name matches the marker.
    """
    if column and fields.get(column) is not None:
        key = normalize_key(fields[column])
        if key:
            return key
    for name, value in fields.items():
        if name in RESERVED_FIELDS or value is None:
            continue
        if _matches_marker(name, marker):
            key = normalize_key(value)
            if key:
                return key
    return ""


# ---------- data ----------

@dataclass(frozen=True)
class InventoryItem:
    fields: Mapping[str, Any]
    key: str = ""

    @classmethod
    def build(cls, fields: Mapping[str, Any], column: Optional[str], marker: str = DEFAULT_MARKER) -> "InventoryItem":
        ordered = dict(fields)
        return cls(fields=MappingProxyType(ordered), key=resolve_item_key(ordered, column, marker))

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.fields)


@dataclass(frozen=True)
class InventoryMetadata:
    file_name: str = ""
    upload_date: Optional[str] = None
    total_items: int = 0
    columns: Tuple[str, ...] = ()
    identifier_column: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "upload_date": self.upload_date,
            "total_items": self.total_items,
            "columns": list(self.columns),
            "identifier_column": self.identifier_column,
        }

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> "InventoryMetadata":
        d = d or {}
        return cls(
            file_name=str(d.get("file_name") or ""),
            upload_date=d.get("upload_date"),
            total_items=int(d.get("total_items") or 0),
            columns=tuple(str(c) for c in (d.get("columns") or [])),
            identifier_column=d.get("identifier_column"),
        )


def _build_index(items: Iterable[InventoryItem]) -> Dict[str, List[InventoryItem]]:
    idx: Dict[str, List[InventoryItem]] = {}
    for it in items:
        if it.key:
            idx.setdefault(it.key, []).append(it)
    return idx


class InventorySnapshot:
    __slots__ = ("items", "metadata", "_index")

    def __init__(self, items: Sequence[InventoryItem], metadata: InventoryMetadata,
                 index: Optional[Mapping[str, Sequence[InventoryItem]]] = None):
        self.items: Tuple[InventoryItem, ...] = tuple(items)
        self.metadata = metadata
        raw = index if index is not None else _build_index(self.items)
        self._index: Mapping[str, Tuple[InventoryItem, ...]] = MappingProxyType(
            {k: tuple(v) for k, v in raw.items()}
        )

    @classmethod
    def empty(cls) -> "InventorySnapshot":
        return cls((), InventoryMetadata())

    def __len__(self) -> int:
        return len(self.items)

    @property
    def key_count(self) -> int:
        return len(self._index)

    def lookup(self, key: Any) -> Tuple[InventoryItem, ...]:
        return self._index.get(normalize_key(key), ())

    def first(self, key: Any) -> Optional[InventoryItem]:
        hits = self.lookup(key)
        return hits[0] if hits else None

    def keys(self) -> List[str]:
        return list(self._index)

    def as_payload(self) -> Dict[str, Any]:
        return {"data": [it.as_dict() for it in self.items], "metadata": self.metadata.as_dict()}


# ---------- builder (chunked loads) ----------

class SnapshotBuilder:
    def __init__(self, column: Optional[str], marker: str = DEFAULT_MARKER):
        self.column = column
        self.marker = marker
        self._items: List[InventoryItem] = []
        self._index: Dict[str, List[InventoryItem]] = {}

    def add_many(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Build and index a chunk. Returns how many items were added."""
        n = 0
        for fields in rows:
            it = InventoryItem.build(fields, self.column, self.marker)
            self._items.append(it)
            if it.key:
                self._index.setdefault(it.key, []).append(it)
            n += 1
        return n

    def truncate(self, max_items: int) -> int:
        """Keep the most recent `max_items`; returns how many were dropped."""
        extra = len(self._items) - max(0, int(max_items))
        if extra <= 0:
            return 0
        self._items = self._items[extra:]
        self._index = _build_index(self._items)
        return extra

    def __len__(self) -> int:
        return len(self._items)

    def freeze(self, metadata: InventoryMetadata) -> InventorySnapshot:
        return InventorySnapshot(self._items, metadata, self._index)


# ---------- published index ----------

class InventoryIndex:
    def __init__(self, snapshot: Optional[InventorySnapshot] = None):
        self._lock = threading.Lock()
        self._snapshot = snapshot if snapshot is not None else InventorySnapshot.empty()
        self.generation = 0

    @property
    def current(self) -> InventorySnapshot:
        return self._snapshot

    def publish(self, snapshot: InventorySnapshot) -> InventorySnapshot:
        """Replace the whole index. Returns the previous snapshot."""
        with self._lock:
            prev, self._snapshot = self._snapshot, snapshot
            self.generation += 1
        log.info("inventory_published", extra={
            "items": len(snapshot), "keys": snapshot.key_count,
            "file_name": snapshot.metadata.file_name, "generation": self.generation,
        })
        return prev

    def clear(self) -> InventorySnapshot:
        return self.publish(InventorySnapshot.empty())

    def lookup(self, key: Any) -> Tuple[InventoryItem, ...]:
        return self._snapshot.lookup(key)

    def __len__(self) -> int:
        return len(self._snapshot)

    def search(self, query: Optional[str] = None, columns: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """
        Case-insensitive substring search across every value of every item.
        `columns` projects the result (id/row are always kept).
        """
        snap = self._snapshot
        if not snap.items:
            return {"items": [], "total": 0, "message": "no inventory loaded"}

        rows = [it.as_dict() for it in snap.items]
        term = (query or "").strip().lower()
        if term:
            rows = [r for r in rows
                    if any(v is not None and term in str(v).lower() for v in r.values())]

        cols = [c for c in (columns or []) if c]
        if cols:
            projected = []
            for r in rows:
                out = {k: r[k] for k in RESERVED_FIELDS if k in r}
                for c in cols:
                    if c in r:
                        out[c] = r[c]
                projected.append(out)
            rows = projected

        return {"items": rows, "total": len(rows), "message": f"found {len(rows)} item(s)"}


# ---------- disk cache ----------

class InventoryStore:
    """
    JSON cache of the last published snapshot. Failures are logged, never raised.

    save() runs on worker threads; `version` (the index generation) orders
    concurrent saves so the file always ends up holding the newest snapshot.
    """
    def __init__(self, path: str | os.PathLike[str], marker: str = DEFAULT_MARKER):
        self.path = Path(path)
        self.marker = marker
        self._lock = threading.Lock()
        self._saved_version = -1

    def save(self, snapshot: InventorySnapshot, version: Optional[int] = None) -> bool:
        payload = {
            "items": [it.as_dict() for it in snapshot.items],
            "metadata": snapshot.metadata.as_dict(),
        }
        with self._lock:
            if version is not None and version < self._saved_version:
                log.info("inventory_save_stale", extra={"path": str(self.path), "version": version})
                return False
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp = self.path.with_suffix(self.path.suffix + ".tmp")
                tmp.write_text(json.dumps(payload, ensure_ascii=False, default=str), encoding="utf-8")
                os.replace(tmp, self.path)
            except Exception as e:
                log.warning("inventory_save_failed", extra={"path": str(self.path), "err": str(e)})
                return False
            if version is not None:
                self._saved_version = version
        log.info("inventory_saved", extra={"path": str(self.path), "items": len(snapshot)})
        return True

    def load(self) -> Optional[InventorySnapshot]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict) or not isinstance(data.get("items"), list):
                raise ValueError("cache root must be an object with an 'items' list")
            meta = InventoryMetadata.from_dict(data.get("metadata"))
            column = meta.identifier_column or detect_identifier_column(meta.columns, self.marker)
            builder = SnapshotBuilder(column, self.marker)
            builder.add_many(r for r in data["items"] if isinstance(r, dict))
            meta = InventoryMetadata(
                file_name=meta.file_name,
                upload_date=meta.upload_date,
                total_items=len(builder),
                columns=meta.columns,
                identifier_column=column,
            )
            snap = builder.freeze(meta)
        except Exception as e:
            log.warning("inventory_cache_unreadable", extra={"path": str(self.path), "err": str(e)})
            return None
        log.info("inventory_cache_loaded", extra={"path": str(self.path), "items": len(snap)})
        return snap
