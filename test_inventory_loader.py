"""
Inventory loading tests.

Tests verify:
1. Headers [id, uhf, desc]: a reading key equal to the UHF value (any case/spacing)
   finds exactly one item
2. Chunked and one-shot loading of the same rows give identical snapshots
3. 12,000 rows in chunks of 1,000 -> 12 progress events, rising percent ending at 100
4. Over the item cap the oldest items are dropped and a truncation event is sent
5. A newer upload supersedes a chunked load in progress; the stale one never publishes
6. CSV and XLSX bytes go through pandas; blank rows are dropped; bad files are rejected
7. JSON cache save/load; a corrupt cache is ignored
8. A later upload wins even when the earlier file is still being parsed
9. CSV lines with extra fields are skipped and counted as dropped
10. Cache saves are ordered by version; restore leaves a live index alone
11. Search and identifier fallback
"""

import asyncio
import io
import tempfile
import time
from pathlib import Path

from openpyxl import Workbook

from rfid_portal import events as ev
from rfid_portal import spreadsheet
from rfid_portal.errors import LoadSuperseded, SpreadsheetError
from rfid_portal.inventory import InventoryIndex, InventoryStore, resolve_item_key
from rfid_portal.spreadsheet import BatchSpreadsheetLoader


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, name, payload):
        self.events.append((name, payload))

    def named(self, name):
        return [p for n, p in self.events if n == name]


def _rows(n: int):
    return [[i, f"E2{i:010d}", f"item {i}"] for i in range(1, n + 1)]


def _loader(**kw):
    idx = InventoryIndex()
    rec = Recorder()
    kw.setdefault("pause_s", 0)
    return idx, rec, BatchSpreadsheetLoader(idx, emit=rec, clock=lambda: 1_700_000_000.0, **kw)


def test_identifier_roundtrip():
    print("\n" + "=" * 80)
    print("TEST 1: [id, uhf, desc] lookup")
    print("=" * 80)

    idx, rec, loader = _loader()
    res = asyncio.run(loader.load_rows(["id", "uhf", "desc"],
                                       [[1, "e200 0001", "Shirt"], [2, "E2000002", "Pants"]], "items.xlsx"))
    assert not res.processed_in_batches
    hits = idx.lookup("  E200 0001 ")
    assert len(hits) == 1 and hits[0].get("desc") == "Shirt", f"expected one Shirt, got {hits}"
    assert hits[0].get("row") == 2, "first data row is sheet row 2"
    meta = idx.current.metadata
    assert meta.identifier_column == "uhf" and meta.total_items == 2, f"bad metadata {meta}"
    assert rec.named(ev.INVENTORY_COMPLETED), "completed event expected"
    print(f"[OK] {hits[0].as_dict()}")


def test_chunked_equals_unchunked():
    print("\n" + "=" * 80)
    print("TEST 2: chunked vs one-shot")
    print("=" * 80)

    headers = ["ID", "Tag UHF", "Desc"]
    rows = _rows(2500)
    idx_a, _, one_shot = _loader(batch_size=10_000)
    idx_b, _, chunked = _loader(batch_size=300)
    ra = asyncio.run(one_shot.load_rows(headers, rows, "a.xlsx"))
    rb = asyncio.run(chunked.load_rows(headers, rows, "a.xlsx"))

    assert not ra.processed_in_batches and rb.processed_in_batches
    a, b = idx_a.current, idx_b.current
    assert len(a) == len(b) == 2500, f"counts differ: {len(a)} vs {len(b)}"
    assert [i.as_dict() for i in a.items] == [i.as_dict() for i in b.items], "item contents differ"
    assert sorted(a.keys()) == sorted(b.keys()), "index keys differ"
    assert a.metadata == b.metadata, "metadata differs"
    print(f"[OK] {len(a)} items, {a.key_count} keys either way")


def test_progress_events_12k():
    print("\n" + "=" * 80)
    print("TEST 3: 12,000 rows / 1,000 per chunk")
    print("=" * 80)

    idx, rec, loader = _loader(batch_size=1000)
    res = asyncio.run(loader.load_rows(["id", "uhf", "desc"], _rows(12_000), "big.xlsx"))

    started = rec.named(ev.INVENTORY_STARTED)
    assert started and started[0]["total_batches"] == 12 and started[0]["total_rows"] == 12_000
    progress = rec.named(ev.INVENTORY_PROGRESS)
    assert len(progress) == 12, f"expected 12 progress events, got {len(progress)}"
    pct = [p["percent"] for p in progress]
    assert all(b > a for a, b in zip(pct, pct[1:])), f"percent must rise: {pct}"
    assert pct[-1] == 100, f"last progress must be 100, got {pct[-1]}"
    assert [p["batch_index"] for p in progress] == list(range(1, 13))
    assert len(idx) == 12_000 and res.total_batches == 12
    assert not rec.named(ev.INVENTORY_TRUNCATED)
    print(f"[OK] percents={pct}")


def test_truncation_keeps_most_recent():
    idx, rec, loader = _loader(batch_size=10, max_items=25)
    res = asyncio.run(loader.load_rows(["id", "uhf", "desc"], _rows(42), "cap.xlsx"))

    snap = idx.current
    assert len(snap) == 25, f"cap is 25, got {len(snap)}"
    assert snap.items[0].get("id") == 18 and snap.items[-1].get("id") == 42, "oldest items are dropped"
    assert idx.lookup("E20000000001") == (), "a dropped item is no longer indexed"
    assert res.truncated_items == 17
    assert rec.named(ev.INVENTORY_TRUNCATED), "truncation is reported"
    assert not rec.named(ev.INVENTORY_ERROR), "truncation is not an error"
    print("[OK] truncated to the 25 most recent items")


def test_newer_upload_supersedes_chunked_load():
    print("\n" + "=" * 80)
    print("TEST 4: supersession")
    print("=" * 80)

    idx, rec, loader = _loader(batch_size=100, pause_s=0.01)

    async def scenario():
        first = asyncio.create_task(loader.load_rows(["id", "uhf"], [[i, f"OLD{i}"] for i in range(1000)], "old.xlsx"))
        await asyncio.sleep(0)      # first chunk done, now pausing
        await loader.load_rows(["id", "uhf"], [[1, "NEW1"]], "new.csv")
        try:
            await first
        except LoadSuperseded:
            return True
        return False

    assert asyncio.run(scenario()), "the older load must raise LoadSuperseded"
    assert idx.current.metadata.file_name == "new.csv", "newest upload stays published"
    assert len(idx) == 1 and idx.lookup("new1"), "no stale rows leaked in"
    completed = [p["metadata"]["file_name"] for p in rec.named(ev.INVENTORY_COMPLETED)]
    assert completed == ["new.csv"], f"only the newer load completes, got {completed}"
    assert loader.active_file is None
    print("[OK] stale load abandoned without publishing")


def test_csv_and_xlsx_bytes():
    print("\n" + "=" * 80)
    print("TEST 5: file parsing")
    print("=" * 80)

    idx, rec, loader = _loader()
    csv = b"UHF,Desc\nabc123,Shirt\n,\nxyz,Pants\n"
    res = asyncio.run(loader.load_bytes(csv, "items.csv"))
    assert len(idx) == 2 and res.dropped_rows == 1, f"blank row must be dropped: {res.as_dict()}"
    assert [i.get("row") for i in idx.current.items] == [2, 4], "row numbers follow the sheet"
    assert [i.get("id") for i in idx.current.items] == [1, 2], "ids count kept rows"

    wb = Workbook()
    ws = wb.active
    ws.append(["ID", "Tag UHF", "Qty"])
    ws.append([1, "E200AA", 3])
    ws.append([2, "E200BB", None])
    buf = io.BytesIO()
    wb.save(buf)
    asyncio.run(loader.load_bytes(buf.getvalue(), "stock.xlsx"))
    item = idx.current.first("e200aa")
    assert item is not None and item.get("Qty") == 3, f"numbers stay numbers: {item}"
    assert "Qty" not in idx.current.first("E200BB").fields, "empty cells are omitted"
    print(f"[OK] xlsx item {item.as_dict()}")

    for bad, name in [(b"", "empty.csv"), (b"whatever", "notes.txt")]:
        try:
            asyncio.run(loader.load_bytes(bad, name))
        except SpreadsheetError:
            pass
        else:
            raise AssertionError(f"{name} should be rejected")
    errors = rec.named(ev.INVENTORY_ERROR)
    assert len(errors) == 2 and errors[-1]["file_name"] == "notes.txt", f"errors reported: {errors}"
    assert idx.current.metadata.file_name == "stock.xlsx", "a rejected upload leaves the index alone"
    print("[OK] bad files rejected with processing-error events")


def test_cache_roundtrip_and_corruption():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "cache" / "inventory.json"
        store = InventoryStore(path)
        idx, rec, loader = _loader(store=store)
        asyncio.run(loader.load_rows(["id", "uhf", "desc"], [[1, "AA", "x"], [2, "BB", "y"]], "c.xlsx"))
        assert path.exists(), "published snapshot is persisted"

        fresh = InventoryIndex()
        loader2 = BatchSpreadsheetLoader(fresh, store=store)
        assert asyncio.run(loader2.restore()), "cache restores on start"
        assert len(fresh) == 2 and fresh.lookup("bb")[0].get("desc") == "y"
        assert fresh.current.metadata.file_name == "c.xlsx"

        path.write_text("{not json", encoding="utf-8")
        assert store.load() is None, "corrupt cache is ignored"
        missing = BatchSpreadsheetLoader(InventoryIndex(), store=InventoryStore(Path(tmp) / "nope.json"))
        assert not asyncio.run(missing.restore())
    print("[OK] cache save/restore, corrupt file tolerated")


def test_slow_parse_loses_to_newer_upload():
    print("\n" + "=" * 80)
    print("TEST: slow file parse vs. a later, faster upload")
    print("=" * 80)

    idx, rec, loader = _loader()
    real_read_table = spreadsheet.read_table

    def slow_for_old(data, file_name):
        if file_name == "old.csv":
            time.sleep(0.3)
        return real_read_table(data, file_name)

    async def scenario():
        old = asyncio.create_task(loader.load_bytes(b"uhf,desc\nOLD1,stale\n", "old.csv"))
        await asyncio.sleep(0.05)           # old is parsing on its worker thread
        await loader.load_bytes(b"uhf,desc\nNEW1,fresh\n", "new.csv")
        try:
            await old
        except LoadSuperseded:
            return True
        return False

    spreadsheet.read_table = slow_for_old
    try:
        assert asyncio.run(scenario()), "the older upload must be superseded once its parse finishes"
    finally:
        spreadsheet.read_table = real_read_table

    assert idx.current.metadata.file_name == "new.csv", f"newest upload must stay published, got {idx.current.metadata}"
    assert idx.lookup("new1") and not idx.lookup("old1"), "no rows from the older file"
    completed = [p["metadata"]["file_name"] for p in rec.named(ev.INVENTORY_COMPLETED)]
    assert completed == ["new.csv"], f"only the newer load completes, got {completed}"
    assert loader.active_file is None
    print("[OK] stale parse discarded")


def test_csv_line_with_extra_fields_is_dropped():
    idx, rec, loader = _loader()
    csv = b"uhf,desc\nA1,Shirt\nB2,Pants,EXTRA\nC3,Hat\n"
    res = asyncio.run(loader.load_bytes(csv, "ragged.csv"))
    assert [i.get("uhf") for i in idx.current.items] == ["A1", "C3"], f"ragged line skipped: {res.as_dict()}"
    assert res.dropped_rows == 1, f"skipped line is counted, got {res.dropped_rows}"
    assert not rec.named(ev.INVENTORY_ERROR), "one bad line does not fail the upload"
    print("[OK] over-long CSV line dropped and counted")


def test_cache_keeps_newest_version():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "inventory.json"
        store = InventoryStore(path)

        _, _, newer = _loader()
        asyncio.run(newer.load_rows(["uhf"], [["NEW"]], "new.xlsx"))
        _, _, older = _loader()
        asyncio.run(older.load_rows(["uhf"], [["OLD"]], "old.xlsx"))

        assert store.save(newer.index.current, version=5)
        assert not store.save(older.index.current, version=4), "an older version must not overwrite"
        assert store.load().metadata.file_name == "new.xlsx"
        assert store.save(older.index.current, version=6), "a newer version is written"
        assert store.load().metadata.file_name == "old.xlsx"

        # restore never replaces something published while the cache was read
        idx, _, loader = _loader(store=store)
        asyncio.run(loader.load_rows(["uhf"], [["LIVE"]], "live.xlsx"))
        assert not asyncio.run(loader.restore())
        assert idx.current.metadata.file_name == "live.xlsx"
    print("[OK] stale saves skipped, restore never clobbers a live index")


def test_search_and_clear():
    idx, rec, loader = _loader()
    asyncio.run(loader.load_rows(["id", "uhf", "desc", "color"],
                                 [[1, "A1", "Blue Shirt", "blue"], [2, "A2", "Red Pants", "red"]], "s.xlsx"))
    res = idx.search("SHIRT")
    assert res["total"] == 1 and res["items"][0]["desc"] == "Blue Shirt"
    proj = idx.search("red", ["desc"])
    assert proj["items"] == [{"id": 2, "row": 3, "desc": "Red Pants"}], f"projection keeps id/row: {proj}"
    assert idx.search("")["total"] == 2

    asyncio.run(loader.clear())
    assert len(idx) == 0 and idx.search("x")["total"] == 0
    assert rec.named(ev.INVENTORY_UPDATED)[-1]["total_items"] == 0


def test_identifier_fallback_per_row():
    fields = {"id": 1, "row": 2, "UHF": None, "uhf_alt": " a1 "}
    assert resolve_item_key(fields, "UHF") == "A1", "falls back to a field whose name carries the marker"
    assert resolve_item_key({"id": 1, "name": "x"}, None) == "", "no identifier -> no key"


if __name__ == "__main__":
    test_identifier_roundtrip()
    test_chunked_equals_unchunked()
    test_progress_events_12k()
    test_truncation_keeps_most_recent()
    test_newer_upload_supersedes_chunked_load()
    test_csv_and_xlsx_bytes()
    test_cache_roundtrip_and_corruption()
    test_slow_parse_loses_to_newer_upload()
    test_csv_line_with_extra_fields_is_dropped()
    test_cache_keeps_newest_version()
    test_search_and_clear()
    test_identifier_fallback_per_row()
    print("\nAll inventory loader tests passed.")
