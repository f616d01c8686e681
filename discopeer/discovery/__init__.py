from __future__ import annotations

from typing import List

from .peers import PeerRecord, RegisterRequest, derive_peer_id, filter_active_peers, parse_registration
from .registry import RegistryStore
from .service import PeerService, Registration

__all__: List[str] = [
    "PeerRecord",
    "PeerService",
    "RegisterRequest",
    "Registration",
    "RegistryStore",
    "derive_peer_id",
    "filter_active_peers",
    "parse_registration",
]
