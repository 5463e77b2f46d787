"""Peer identity snapshot and classification result types.

A PeerSnapshot is rebuilt from the engine's peer info on every event; nothing
in the filter layer mutates or keeps it beyond the callback that produced it.
"""

from dataclasses import dataclass

from peerguard.utils.formatters import format_endpoint

# Country code returned when an address cannot be geolocated.
UNKNOWN_COUNTRY = "unknown"

PEER_ID_LENGTH = 20
PEER_ID_PREFIX_LENGTH = 8


@dataclass(frozen=True)
class PeerSnapshot:
    ip: str
    port: int
    client: str = ""
    peer_id: bytes = b""
    handshake_complete: bool = False

    def __post_init__(self):
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    @property
    def peer_id_prefix(self) -> bytes:
        """First 8 bytes of the peer id, or b"" while it is not usable.

        The peer id is only meaningful once the handshake is done.
        """
        if not self.handshake_complete or len(self.peer_id) < PEER_ID_PREFIX_LENGTH:
            return b""
        return bytes(self.peer_id[:PEER_ID_PREFIX_LENGTH])

    @property
    def endpoint(self) -> str:
        return format_endpoint(self.ip, self.port)


@dataclass(frozen=True)
class ClassificationResult:
    matched: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.matched


NO_MATCH = ClassificationResult(False)
