"""
Tests de `RegistryStore`: TTL de grupo, techo global y desalojo LRU.
"""
from __future__ import annotations

import pytest

from discopeer.discovery.peers import PeerRecord
from discopeer.discovery.registry import RegistryStore


def _members(clock, *ids: str, ttl: int = 60) -> list[PeerRecord]:
    return [
        PeerRecord(name=i, endpoint=f"tcp://{i}", peer_id=i, source_address="h:1", registered_at=clock(), ttl=ttl)
        for i in ids
    ]


# ════════════════════════════════════════════════════════════════════════════
# get / put / delete
# ════════════════════════════════════════════════════════════════════════════
def test_put_get_delete(clock) -> None:
    store = RegistryStore(capacity=10, clock=clock)
    assert store.get("g") is None
    store.put("g", _members(clock, "a", "b"), 60)
    assert [p.peer_id for p in store.get("g")] == ["a", "b"]
    assert "g" in store and len(store) == 1
    assert store.delete("g") is True
    assert store.delete("g") is False
    assert store.get("g") is None


def test_get_returns_a_copy(clock) -> None:
    store = RegistryStore(clock=clock)
    store.put("g", _members(clock, "a"), 60)
    store.get("g").clear()
    assert len(store.get("g")) == 1


def test_put_empty_deletes(clock) -> None:
    store = RegistryStore(clock=clock)
    store.put("g", _members(clock, "a"), 60)
    store.put("g", [], 60)
    assert "g" not in store
    assert len(store) == 0


def test_invalid_capacity() -> None:
    with pytest.raises(ValueError):
        RegistryStore(capacity=0)


# ════════════════════════════════════════════════════════════════════════════
# TTL del grupo
# ════════════════════════════════════════════════════════════════════════════
def test_group_expires_after_ttl(clock) -> None:
    store = RegistryStore(clock=clock)
    store.put("g", _members(clock, "a"), 2)
    assert store.group_ttl("g") == 2
    clock.advance(1999)
    assert store.get("g") is not None
    clock.advance(1)
    assert store.get("g") is None
    assert len(store) == 0


def test_group_ttl_is_capped_by_max_age(clock) -> None:
    store = RegistryStore(max_age=10, clock=clock)
    store.put("g", _members(clock, "a", ttl=3600), 3600)
    assert store.group_ttl("g") == 3600
    clock.advance(10_000)
    assert store.get("g") is None


def test_zero_ttl_falls_back_to_ceiling(clock) -> None:
    store = RegistryStore(max_age=10, clock=clock)
    store.put("g", _members(clock, "a", ttl=0), 0)
    clock.advance(9_999)
    assert "g" in store
    clock.advance(1)
    assert "g" not in store


# ════════════════════════════════════════════════════════════════════════════
# Desalojo LRU
# ════════════════════════════════════════════════════════════════════════════
def test_lru_eviction_of_least_recently_touched(clock) -> None:
    store = RegistryStore(capacity=2, clock=clock)
    store.put("a", _members(clock, "1"), 60)
    store.put("b", _members(clock, "2"), 60)
    store.get("a")  # "b" pasa a ser el menos usado
    store.put("c", _members(clock, "3"), 60)
    assert "a" in store and "c" in store
    assert "b" not in store
    assert len(store) == 2


def test_expired_head_is_reclaimed_on_insert(clock) -> None:
    store = RegistryStore(capacity=2, clock=clock)
    store.put("short", _members(clock, "1", ttl=1), 1)
    store.put("long", _members(clock, "2"), 60)
    clock.advance(1000)
    store.put("new", _members(clock, "3"), 60)
    assert "long" in store and "new" in store


def test_items_is_verbatim(clock) -> None:
    store = RegistryStore(clock=clock)
    members = _members(clock, "a", ttl=1) + _members(clock, "b", ttl=60)
    store.put("g", members, 60)
    clock.advance(5_000)
    # items() no filtra miembros expirados; sólo grupos caducados
    assert [p.peer_id for p in store.to_dict()["g"]] == ["a", "b"]


def test_insert_at_capacity_does_not_scan_the_store(clock, monkeypatch) -> None:
    store = RegistryStore(capacity=100, clock=clock)
    for i in range(100):
        store.put(f"g{i}", _members(clock, "a"), 60)

    def _no_scan(now):
        raise AssertionError("put no debe recorrer todo el registro")

    monkeypatch.setattr(store, "_purge_locked", _no_scan)
    for i in range(100, 300):
        store.put(f"g{i}", _members(clock, "a"), 60)
    assert len(store) == 100
    assert "g199" not in store and "g299" in store


def test_purge_removes_only_expired_groups(clock) -> None:
    store = RegistryStore(clock=clock)
    store.put("short", _members(clock, "1", ttl=1), 1)
    store.put("long", _members(clock, "2"), 60)
    clock.advance(1000)
    # el grupo caducado sigue contando hasta que alguien lo toca o se purga
    assert len(store) == 2
    assert store.purge() == 1
    assert len(store) == 1 and "long" in store
    assert store.purge() == 0
