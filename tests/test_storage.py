import json

import pytest

from netcover.storage.kv_store import MemoryStore, SQLiteStore
from netcover.storage.overlay_store import OverlayStore
from netcover.storage.partition_cache import PartitionCache

from conftest import point_record, raw_offer


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield MemoryStore()
    else:
        s = SQLiteStore(tmp_path / "cache.db")
        yield s
        s.close()


def test_store_contract(any_store):
    assert any_store.get("k") is None
    any_store.set("k", "v1")
    any_store.set("k", "v2")
    assert any_store.get("k") == "v2"
    any_store.set("region_a", "x")
    any_store.set("regionb", "y")
    assert any_store.keys("region_") == ["region_a"]
    any_store.remove("k")
    any_store.remove("missing")
    assert any_store.get("k") is None


def test_sqlite_store_persists_across_instances(tmp_path):
    path = tmp_path / "sub" / "cache.db"
    first = SQLiteStore(path)
    first.set("region_riga", "{}")
    first.close()
    second = SQLiteStore(path)
    assert second.get("region_riga") == "{}"
    second.close()
    second.close()


def test_put_then_get_valid(any_store):
    cache = PartitionCache(any_store)
    recs = [point_record("a", 24.1, 56.9), point_record("b", 24.2, 56.9, "dsl")]
    cache.put("riga", recs, "2025-01-01")
    got = cache.get_valid("riga", "2025-01-01")
    assert [r.id for r in got] == ["a", "b"]
    assert got[1].category == "dsl"
    assert cache.cached_names() == ["riga"]


def test_republished_partition_purges_stale_entry(any_store):
    # old timestamp cached, catalog republished with a new one
    cache = PartitionCache(any_store)
    cache.put("riga", [point_record("a", 24.1, 56.9)], "2025-01-01")

    assert cache.get_valid("riga", "2025-02-01") is None
    assert cache.get("riga") is None
    assert cache.get_valid("riga", "2025-01-01") is None

    cache.put("riga", [point_record("a2", 24.1, 56.9)], "2025-02-01")
    assert [r.id for r in cache.get_valid("riga", "2025-02-01")] == ["a2"]


def test_freshness_law_latest_put_decides(store):
    cache = PartitionCache(store)
    cache.put("p", [], "t1")
    cache.put("p", [], "t2")
    assert cache.get_valid("p", "t1") is None
    cache.put("p", [], "t3")
    assert cache.get_valid("p", "t3") == []


def test_missing_token_accepts_any_entry(store):
    cache = PartitionCache(store)
    cache.put("p", [point_record("a", 1, 1)], "t1")
    assert len(cache.get_valid("p", None)) == 1


def test_never_put_is_a_miss(store):
    assert PartitionCache(store).get_valid("nope", "t") is None


@pytest.mark.parametrize("raw", [
    "{not json",
    json.dumps({"updatedAt": "t"}),
    json.dumps({"updatedAt": "t", "records": [{"id": "x"}]}),
    json.dumps(["list"]),
])
def test_corrupt_entry_is_a_miss_and_deleted(store, raw):
    store.set("region_bad", raw)
    cache = PartitionCache(store)
    assert cache.get("bad") is None
    assert store.get("region_bad") is None


def test_overlay_store_save_and_load(store):
    overlays = OverlayStore(store)
    ptr = overlays.save("upload.json", [
        raw_offer("u1", 24.1, 56.9),
        raw_offer("u2", 24.2, 57.0, "5G"),
        {"garbage": True},
    ])
    assert ptr.name == "user:upload.json"
    assert ptr.overlay
    assert ptr.record_count == 2
    assert [p.name for p in overlays.pointers()] == ["user:upload.json"]

    recs = overlays.records("upload.json")
    assert {r.id: r.category for r in recs} == {"u1": "fiber", "u2": "mobile"}


def test_overlay_resave_replaces_pointer(store):
    overlays = OverlayStore(store)
    overlays.save("a", [raw_offer("u1", 24.1, 56.9)])
    overlays.save("a", [raw_offer("u1", 24.1, 56.9), raw_offer("u2", 24.2, 56.9)])
    pointers = overlays.pointers()
    assert len(pointers) == 1
    assert pointers[0].record_count == 2


def test_overlay_delete(store):
    overlays = OverlayStore(store)
    overlays.save("a", [raw_offer("u1", 24.1, 56.9)])
    assert overlays.delete("user:a")
    assert overlays.pointers() == []
    assert overlays.records("a") is None
    assert not overlays.delete("a")


def test_overlay_without_valid_records_rejected(store):
    with pytest.raises(ValueError):
        OverlayStore(store).save("empty", [{"id": "x"}])
