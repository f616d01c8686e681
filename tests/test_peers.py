"""
Tests del modelo `PeerRecord`, la validación de registros, la identidad
y el filtro de expiración.
"""
from __future__ import annotations

import pytest

from discopeer.discovery.peers import (
    DEFAULT_TTL_S,
    PeerRecord,
    derive_peer_id,
    filter_active_peers,
    max_ttl,
    parse_registration,
    resolve_peer_id,
    split_active,
)
from discopeer.errors import ValidationError

NOW = 1_700_000_000_000


def _peer(peer_id: str = "p1", ttl: int = 10, registered_at: int = NOW, **kw) -> PeerRecord:
    return PeerRecord(
        name=kw.get("name", "svc"),
        endpoint=kw.get("endpoint", "http://10.0.0.1:8080"),
        peer_id=peer_id,
        source_address=kw.get("source_address", "10.0.0.9:5555"),
        registered_at=registered_at,
        ttl=ttl,
        metadata=kw.get("metadata", {}),
    )


# ════════════════════════════════════════════════════════════════════════════
# Validación de entrada
# ════════════════════════════════════════════════════════════════════════════
def test_parse_registration_defaults() -> None:
    req = parse_registration({"name": "svc1", "endpoint": "http://10.0.0.1:8080"})
    assert req.ttl == DEFAULT_TTL_S == 300
    assert req.metadata == {}
    assert req.peerId is None


@pytest.mark.parametrize(
    "body, message",
    [
        ({"endpoint": "x"}, "Invalid name parameter"),
        ({"name": "", "endpoint": "x"}, "Invalid name parameter"),
        ({"name": 5, "endpoint": 7}, "Invalid name parameter"),
        ({"name": "svc"}, "Invalid endpoint parameter"),
        ({"name": "svc", "endpoint": ["x"]}, "Invalid endpoint parameter"),
        ({"name": "svc", "endpoint": "x", "ttl": -1}, "Invalid TTL parameter"),
        ({"name": "svc", "endpoint": "x", "ttl": "abc"}, "Invalid TTL parameter"),
        ({"name": "svc", "endpoint": "x", "ttl": 1.5}, "Invalid TTL parameter"),
        ({"name": "svc", "endpoint": "x", "ttl": True}, "Invalid TTL parameter"),
        ({"name": "svc", "endpoint": "x", "metadata": "nope"}, "Invalid metadata format"),
        ({"name": "svc", "endpoint": "x", "peerId": 42}, "Invalid peerId format"),
    ],
)
def test_parse_registration_errors(body, message) -> None:
    with pytest.raises(ValidationError) as exc_info:
        parse_registration(body)
    assert exc_info.value.message == message
    assert exc_info.value.status_code == 400


def test_parse_registration_rejects_non_object() -> None:
    with pytest.raises(ValidationError, match="Invalid request body"):
        parse_registration(["name", "endpoint"])


def test_parse_registration_lenient_values() -> None:
    req = parse_registration(
        {"name": "svc", "endpoint": "x", "ttl": "30", "metadata": None, "peerId": "", "extra": 1}
    )
    assert req.ttl == 30
    assert req.metadata == {}
    assert req.peerId is None
    assert parse_registration({"name": "svc", "endpoint": "x", "ttl": 0}).ttl == 0
    assert parse_registration({"name": "svc", "endpoint": "x", "ttl": 60.0}).ttl == 60


# ════════════════════════════════════════════════════════════════════════════
# Identidad
# ════════════════════════════════════════════════════════════════════════════
def test_derive_peer_id_is_deterministic() -> None:
    a = derive_peer_id("svc1", "http://10.0.0.1:8080", "1.2.3.4:5000")
    b = derive_peer_id("svc1", "http://10.0.0.1:8080", "1.2.3.4:5000")
    assert a == b
    assert len(a) == 32
    int(a, 16)  # hex
    assert derive_peer_id("svc1", "http://10.0.0.1:8080", "1.2.3.4:5001") != a


def test_resolve_peer_id_prefers_client_value() -> None:
    req = parse_registration({"name": "svc", "endpoint": "x", "peerId": "mine"})
    assert resolve_peer_id(req, "1.2.3.4:1") == "mine"
    anon = parse_registration({"name": "svc", "endpoint": "x"})
    assert resolve_peer_id(anon, "1.2.3.4:1") == derive_peer_id("svc", "x", "1.2.3.4:1")


# ════════════════════════════════════════════════════════════════════════════
# Filtro de expiración
# ════════════════════════════════════════════════════════════════════════════
def test_expiration_boundary() -> None:
    ttl = 10
    alive = _peer("alive", ttl=ttl, registered_at=NOW - ttl * 1000 + 1)
    dead = _peer("dead", ttl=ttl, registered_at=NOW - ttl * 1000)
    assert [p.peer_id for p in split_active([alive, dead], NOW)] == ["alive"]


def test_zero_ttl_is_never_active() -> None:
    assert split_active([_peer(ttl=0)], NOW) == []


def test_public_view_and_age_rounding() -> None:
    peers = [
        _peer("a", registered_at=NOW),
        _peer("b", registered_at=NOW - 1499),
        _peer("c", registered_at=NOW - 1500, metadata={"role": "relay"}),
    ]
    view = filter_active_peers(peers, NOW)
    assert [v["age"] for v in view] == [0, 1, 2]
    assert set(view[2]) == {"name", "endpoint", "sourceAddress", "peerId", "metadata", "age"}
    assert view[2]["metadata"] == {"role": "relay"}
    assert view[2]["sourceAddress"] == "10.0.0.9:5555"


def test_filter_is_order_independent() -> None:
    peers = [_peer("a", ttl=1, registered_at=NOW - 5000), _peer("b", ttl=60)]
    assert filter_active_peers(peers, NOW) == filter_active_peers(peers, NOW)
    assert filter_active_peers(list(reversed(peers)), NOW) == filter_active_peers(peers, NOW)


def test_max_ttl() -> None:
    assert max_ttl([_peer(ttl=5), _peer(ttl=50), _peer(ttl=20)]) == 50
    assert max_ttl([]) == 0


def test_record_dict_round_trip_and_corrupt_input() -> None:
    peer = _peer(metadata={"k": "v"})
    assert PeerRecord.from_dict(peer.to_dict()) == peer
    assert peer.to_dict()["registeredAt"] == NOW
    with pytest.raises(ValueError):
        PeerRecord.from_dict({"name": "x"})
