"""
Reading buffer tests.

Tests verify:
1. The ring never grows past its capacity; the oldest reading goes first
2. Unique-tag count is a lifetime counter (not pruned on eviction)
3. Decoded events with missing fields get defaults; keys are normalized
4. clear() resets ring and counters
"""

from rfid_portal.readings import ReadingBuffer, TagReading, normalize_key


def test_capacity_and_eviction_order():
    print("\n" + "=" * 80)
    print("TEST 1: ring capacity and eviction order")
    print("=" * 80)

    buf = ReadingBuffer(capacity=5)
    for i in range(1, 13):
        buf.ingest({"tid": f"T{i:03d}", "epc": f"E{i}"}, now=1000.0 + i)
        assert len(buf) <= 5, f"buffer grew to {len(buf)} (cap 5)"

    tids = [r.tid for r in buf.recent()]
    assert tids == ["T008", "T009", "T010", "T011", "T012"], f"unexpected ring contents {tids}"
    assert buf.total_reads == 12, f"total_reads should be 12, got {buf.total_reads}"
    assert buf.evicted_total == 7, f"evicted_total should be 7, got {buf.evicted_total}"
    print(f"[OK] ring holds {tids}, evicted={buf.evicted_total}")


def test_unique_count_is_lifetime():
    print("\n" + "=" * 80)
    print("TEST 2: unique tags counted over the whole session")
    print("=" * 80)

    buf = ReadingBuffer(capacity=2)
    for tid in ["a1", "A1 ", "b2", "c3", "d4"]:
        buf.ingest({"tid": tid}, now=1.0)

    assert buf.unique_count == 4, f"expected 4 distinct keys ever seen, got {buf.unique_count}"
    assert buf.live_keys() == {"C3", "D4"}, f"live keys must come from the ring, got {buf.live_keys()}"
    print(f"[OK] unique={buf.unique_count}, live={sorted(buf.live_keys())}")


def test_event_defaults_and_normalization():
    print("\n" + "=" * 80)
    print("TEST 3: decoded event defaults")
    print("=" * 80)

    r = TagReading.from_event({"tid": "  e280abc ", "ant": "3", "rssi": "-51.5"}, seq=7, timestamp=0.0)
    assert r.tid == "E280ABC", f"tid not normalized: {r.tid!r}"
    assert r.epc == "", f"missing epc should default to '', got {r.epc!r}"
    assert r.antenna == 3 and r.rssi == -51.5, f"bad numeric coercion: {r}"
    assert r.correlation_key == "E280ABC"

    empty = TagReading.from_event(None, seq=1, timestamp=0.0)
    assert (empty.tid, empty.epc, empty.rssi, empty.antenna) == ("", "", 0.0, 0), f"bad defaults: {empty}"

    junk = TagReading.from_event({"antenna": "x", "rssi": None}, seq=2, timestamp=0.0)
    assert junk.antenna == 0 and junk.rssi == 0.0, f"unparseable fields must default: {junk}"

    d = r.as_dict()
    assert d["id"] == 7 and d["timestamp"] == "1970-01-01T00:00:00.000Z", f"bad as_dict: {d}"
    assert normalize_key(None) == "" and normalize_key(" ab ") == "AB"
    print(f"[OK] {d}")


def test_clear_resets_counters():
    buf = ReadingBuffer(capacity=3)
    for i in range(5):
        buf.ingest({"tid": f"x{i}"}, now=1.0)
    buf.clear()
    snap = buf.snapshot()
    assert snap == {"readings": [], "total_reads": 0, "unique_tags": 0}, f"clear left state behind: {snap}"
    assert buf.recent(0) == [], "recent(0) must be empty"

    r = buf.ingest({"tid": "after"}, now=2.0)
    assert r.seq == 6, f"sequence ids keep increasing across clear, got {r.seq}"
    print("[OK] clear() resets ring and counters")


if __name__ == "__main__":
    test_capacity_and_eviction_order()
    test_unique_count_is_lifetime()
    test_event_defaults_and_normalization()
    test_clear_resets_counters()
    print("\nAll reading buffer tests passed.")
