"""Per-torrent composition of peer filters and the actions they trigger.

PluginManager attaches one TorrentPluginAttachment per public torrent. Each
attachment creates a PeerFilterChain for every peer connection it sees; the
chain owns that connection's FilterGates, so no gate state is ever shared
between peers.
"""

import time
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from peerguard.core.actions import ActionExecutor, DropConnection, PeerConnectionHandle
from peerguard.core.classifiers import Classifier, build_classifiers
from peerguard.core.gate import FilterGate
from peerguard.core.geoip import GeoLookup
from peerguard.core.peer import PeerSnapshot, ClassificationResult

logger = logging.getLogger(__name__)

Plugin = Tuple[Classifier, ActionExecutor]
DropListener = Callable[[str, PeerSnapshot, str], None]  # torrent_id, peer, reason


class TorrentMetadata:
    """Access to torrent metadata needed at attach time."""

    def torrent_id(self, torrent) -> str:
        raise NotImplementedError

    def is_private(self, torrent) -> bool:
        raise NotImplementedError


class PeerFilterChain:
    """The gates of one peer connection, evaluated in configuration order."""

    def __init__(self, plugins: Sequence[Plugin], geo: GeoLookup):
        self._steps = [(FilterGate(classifier, geo), action) for classifier, action in plugins]
        self._dropped = False
        self._disconnected = False

    @property
    def gates(self) -> List[FilterGate]:
        return [gate for gate, _ in self._steps]

    @property
    def dropped(self) -> bool:
        return self._dropped

    @property
    def disconnected(self) -> bool:
        """True if the match actually closed the connection."""
        return self._disconnected

    def on_peer_event(self, peer: PeerSnapshot,
                      handle: PeerConnectionHandle) -> Optional[ClassificationResult]:
        if self._dropped:
            return None
        for gate, action in self._steps:
            result = gate.evaluate(peer)
            if result:
                self._dropped = True
                self._disconnected = bool(action.apply(handle))
                return result
        return None


class TorrentPluginAttachment:

    def __init__(self, torrent_id: str, plugins: Sequence[Plugin], geo: GeoLookup):
        self.torrent_id = torrent_id
        self._plugins: Tuple[Plugin, ...] = tuple(plugins)
        self._geo = geo
        self._connections: Dict[object, PeerFilterChain] = {}

    @property
    def plugins(self) -> Tuple[Plugin, ...]:
        return self._plugins

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def chain_for(self, connection_id) -> PeerFilterChain:
        chain = self._connections.get(connection_id)
        if chain is None:
            chain = PeerFilterChain(self._plugins, self._geo)
            self._connections[connection_id] = chain
        return chain

    def connection_closed(self, connection_id):
        self._connections.pop(connection_id, None)


class PluginManager:
    """Attaches filter plugins to torrents and dispatches peer events to them."""

    def __init__(self, metadata: TorrentMetadata, geo: GeoLookup, plugins: Sequence[Plugin],
                 on_drop: Optional[DropListener] = None):
        self._metadata = metadata
        self._geo = geo
        self._plugins: Tuple[Plugin, ...] = tuple(plugins)
        self._on_drop = on_drop
        self._attachments: Dict[str, TorrentPluginAttachment] = {}
        self._drop_log: List[dict] = []
        self._max_log = 500
        self._total_drops = 0

    @classmethod
    def from_config(cls, cfg: dict, metadata: TorrentMetadata, geo: GeoLookup,
                    on_drop: Optional[DropListener] = None) -> "PluginManager":
        action = DropConnection()
        plugins = [(classifier, action) for classifier in build_classifiers(cfg)]
        return cls(metadata, geo, plugins, on_drop=on_drop)

    @property
    def plugins(self) -> Tuple[Plugin, ...]:
        return self._plugins

    def attach(self, torrent) -> Optional[TorrentPluginAttachment]:
        """Attach the filters to a torrent.

        Returns None, and drops any earlier attachment, when the torrent is
        private. Returns None without raising if the metadata can't be read.
        """
        try:
            torrent_id = self._metadata.torrent_id(torrent)
            private = self._metadata.is_private(torrent)
        except Exception as e:
            logger.warning(f"Skipping peer filters for torrent, metadata unavailable: {e}")
            return None

        if private:
            if self._attachments.pop(torrent_id, None) is not None:
                logger.info(f"Torrent {torrent_id} is private, peer filters detached")
            else:
                logger.info(f"Torrent {torrent_id} is private, peer filters not attached")
            return None

        existing = self._attachments.get(torrent_id)
        if existing is not None:
            return existing
        if not self._plugins:
            return None

        attachment = TorrentPluginAttachment(torrent_id, self._plugins, self._geo)
        self._attachments[torrent_id] = attachment
        logger.debug(f"Attached {len(self._plugins)} peer filters to {torrent_id}")
        return attachment

    def detach(self, torrent_id: str):
        self._attachments.pop(torrent_id, None)

    def attachment(self, torrent_id: str) -> Optional[TorrentPluginAttachment]:
        return self._attachments.get(torrent_id)

    def is_attached(self, torrent_id: str) -> bool:
        return torrent_id in self._attachments

    def dispatch(self, torrent_id: str, handle: PeerConnectionHandle,
                 peer: PeerSnapshot) -> Optional[ClassificationResult]:
        """Run a peer event through the torrent's filters.

        Returns the match that caused a drop, or None. Only matches whose
        action actually closed the connection are logged and reported to
        on_drop.
        """
        attachment = self._attachments.get(torrent_id)
        if attachment is None:
            return None
        chain = attachment.chain_for(handle.connection_id)
        result = chain.on_peer_event(peer, handle)
        if result:
            if chain.disconnected:
                self._log_drop(torrent_id, peer, result.reason)
            else:
                logger.debug(f"Peer {peer.endpoint} on {torrent_id} matched but was already "
                             f"closing: {result.reason}")
        return result

    def connection_closed(self, torrent_id: str, connection_id):
        attachment = self._attachments.get(torrent_id)
        if attachment is not None:
            attachment.connection_closed(connection_id)

    def _log_drop(self, torrent_id: str, peer: PeerSnapshot, reason: str):
        logger.info(f"Dropped peer {peer.endpoint} ({peer.client or 'no client'}) "
                    f"on {torrent_id}: {reason}")
        self._drop_log.append({
            "time": time.time(),
            "torrent": torrent_id,
            "ip": peer.ip,
            "port": peer.port,
            "client": peer.client,
            "reason": reason,
        })
        if len(self._drop_log) > self._max_log:
            self._drop_log.pop(0)
        self._total_drops += 1
        if self._on_drop is not None:
            self._on_drop(torrent_id, peer, reason)

    @property
    def drop_log(self) -> List[dict]:
        return self._drop_log

    @property
    def stats(self) -> dict:
        return {
            "torrents_attached": len(self._attachments),
            "connections_tracked": sum(a.connection_count for a in self._attachments.values()),
            "total_drops": self._total_drops,
        }
