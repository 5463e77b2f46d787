"""Session worker - runs the libtorrent session and its peer filters on a
dedicated QThread.

Architecture:
  ThreadedSession -> (queued slot calls) -> SessionWorker [on QThread]
  SessionWorker -> (signal) -> caller thread

libtorrent's Python bindings do not expose peer plugins, so the worker feeds
the PluginManager from two sources: peer_connect_alert for new connections and
a periodic sweep over every attached torrent's peer list, which catches peers
as their handshake completes. Suppressed gates keep the sweep cheap.
"""

import logging
from typing import Optional, Dict, Set

import libtorrent as lt
from PyQt6.QtCore import QObject, QTimer, pyqtSignal, pyqtSlot, QThread, QMetaObject, Qt

from peerguard.core.actions import (
    PeerConnectionHandle, PeerConnectionClosed, DisconnectReason, Operation, Severity,
)
from peerguard.core.geoip import GeoLookup, open_geo_lookup
from peerguard.core.peer import PeerSnapshot
from peerguard.core.plugin_manager import PluginManager, TorrentMetadata
from peerguard.core.settings import Settings
from peerguard.utils.formatters import format_endpoint, format_peer_id

logger = logging.getLogger(__name__)

# Resolve libtorrent flags safely (API varies between binding versions)
_tf = getattr(lt, 'torrent_flags', None) or getattr(lt, 'torrent_flags_t', None)
_FLAG_AUTO_MANAGED = getattr(_tf, 'auto_managed', 0x40) if _tf else 0x40
_FLAG_APPLY_IP_FILTER = getattr(_tf, 'apply_ip_filter', 0x8) if _tf else 0x8
_PEER_HANDSHAKE = int(getattr(lt.peer_info, 'handshake', 0x40))
_PEER_CONNECTING = int(getattr(lt.peer_info, 'connecting', 0x80))


def _peer_id_bytes(pid) -> bytes:
    if pid is None:
        return b""
    if isinstance(pid, (bytes, bytearray)):
        return bytes(pid)
    to_bytes = getattr(pid, 'to_bytes', None)
    if callable(to_bytes):
        return bytes(to_bytes())
    try:
        return bytes(pid)
    except TypeError:
        return b""


def _client_text(client) -> str:
    if isinstance(client, (bytes, bytearray)):
        return bytes(client).decode("utf-8", errors="replace")
    return str(client or "")


def snapshot_from_peer_info(info) -> PeerSnapshot:
    """Build a PeerSnapshot from an lt.peer_info entry."""
    flags = int(getattr(info, 'flags', 0))
    return PeerSnapshot(
        ip=str(info.ip[0]),
        port=int(info.ip[1]),
        client=_client_text(getattr(info, 'client', "")),
        peer_id=_peer_id_bytes(getattr(info, 'pid', None)),
        handshake_complete=not flags & (_PEER_HANDSHAKE | _PEER_CONNECTING),
    )


def _alert_endpoint(alert):
    endpoint = getattr(alert, 'endpoint', None) or getattr(alert, 'ip', None)
    if not endpoint:
        return None
    return str(endpoint[0]), int(endpoint[1])


class LibtorrentMetadata(TorrentMetadata):
    """Torrent metadata read from an lt.torrent_handle."""

    def torrent_id(self, torrent) -> str:
        return str(torrent.info_hash())

    def is_private(self, torrent) -> bool:
        # Magnets without metadata yet are treated as public until it arrives
        ti = torrent.torrent_file()
        return bool(ti is not None and ti.priv())


class AddressBlocker:
    """Disconnects peers through the session ip_filter.

    Adding a single-address rule makes libtorrent close every connection to
    that address and refuse new ones.
    """

    def __init__(self, session):
        self._session = session
        self._ip_filter = session.get_ip_filter()
        self._blocked: Set[str] = set()

    def is_blocked(self, ip: str) -> bool:
        return ip in self._blocked

    def block(self, ip: str):
        if ip in self._blocked:
            raise PeerConnectionClosed(ip)
        self._ip_filter.add_rule(ip, ip, 1)
        self._session.set_ip_filter(self._ip_filter)
        self._blocked.add(ip)

    @property
    def blocked_count(self) -> int:
        return len(self._blocked)


class SessionPeerHandle(PeerConnectionHandle):

    def __init__(self, blocker: AddressBlocker, ip: str, port: int):
        self._blocker = blocker
        self._ip = ip
        self._port = port

    @property
    def connection_id(self):
        return self._ip, self._port

    @property
    def closing(self) -> bool:
        return self._blocker.is_blocked(self._ip)

    def disconnect(self, reason: DisconnectReason, operation: Operation, severity: Severity):
        logger.debug(f"Disconnecting {format_endpoint(self._ip, self._port)} "
                     f"({reason.name}, {operation.name}, {severity.name})")
        self._blocker.block(self._ip)


class SessionWorker(QObject):
    """Owns the libtorrent session and the peer filters. Lives on a QThread."""

    # --- Outbound signals (worker -> caller) ---
    peer_dropped = pyqtSignal(str, str, str)   # info_hash, ip, reason
    torrent_attached = pyqtSignal(str)
    torrent_skipped = pyqtSignal(str)
    started = pyqtSignal()
    stopped = pyqtSignal()

    def __init__(self, cfg: dict, geo: Optional[GeoLookup] = None):
        super().__init__()
        self._cfg = cfg  # plain dict snapshot (thread-safe, no SQLite)
        self._session = None
        self._geo = geo
        self._owns_geo = geo is None
        self._metadata = LibtorrentMetadata()
        self._plugins: Optional[PluginManager] = None
        self._blocker: Optional[AddressBlocker] = None
        self._handles: Dict[str, object] = {}

        self._alert_timer: Optional[QTimer] = None
        self._sweep_timer: Optional[QTimer] = None

    @property
    def plugins(self) -> Optional[PluginManager]:
        return self._plugins

    # --- Lifecycle (called on worker thread) ---

    @pyqtSlot()
    def initialize(self):
        """Called when the thread starts. Creates the lt session."""
        logger.info("SessionWorker initializing on thread...")

        settings = {
            'user_agent': 'PeerGuard/1.0',
            'peer_fingerprint': '-PG1000-',
            'listen_interfaces': '0.0.0.0:{p},[::0]:{p}'.format(
                p=self._cfg.get("listen_port", 6881)),
            'connections_limit': self._cfg.get("max_connections", 500),
            'enable_dht': self._cfg.get("dht_enabled", True),
            'enable_lsd': self._cfg.get("lsd_enabled", True),
        }
        try:
            settings['alert_mask'] = (
                lt.alert.category_t.error_notification |
                lt.alert.category_t.status_notification |
                lt.alert.category_t.peer_notification |
                lt.alert.category_t.connect_notification |
                lt.alert.category_t.ip_block_notification
            )
        except AttributeError:
            settings['alert_mask'] = 0x7fffffff

        self._setup_filters(lt.session(settings))

        self._alert_timer = QTimer(self)
        self._alert_timer.timeout.connect(self._process_alerts)
        self._alert_timer.start(500)

        self._sweep_timer = QTimer(self)
        self._sweep_timer.timeout.connect(self._sweep_peers)
        self._sweep_timer.start(int(self._cfg.get("peer_filter_interval", 1000)))

        logger.info(f"SessionWorker started on port {self._cfg.get('listen_port', 6881)}")
        self.started.emit()

    def _setup_filters(self, session):
        self._session = session
        self._blocker = AddressBlocker(session)
        if self._geo is None:
            self._geo = open_geo_lookup(self._cfg.get("geoip_database_path", ""))
        self._plugins = PluginManager.from_config(
            self._cfg, self._metadata, self._geo, on_drop=self._on_drop)
        names = ", ".join(c.name for c, _ in self._plugins.plugins) or "none"
        logger.info(f"Peer filters enabled: {names}")

    @pyqtSlot()
    def shutdown(self):
        """Gracefully stop the session. MUST run on worker thread."""
        logger.info("SessionWorker shutting down...")

        if self._alert_timer:
            self._alert_timer.stop()
        if self._sweep_timer:
            self._sweep_timer.stop()

        if self._session:
            self._session.pause()
            del self._session
            self._session = None

        if self._geo is not None and self._owns_geo:
            self._geo.close()
            self._geo = None

        self._handles.clear()
        self.stopped.emit()
        logger.info("SessionWorker stopped.")

    # --- Torrent operations (slots callable from other threads) ---

    @pyqtSlot(str, str)
    def add_torrent_file(self, filepath: str, save_path: str = ""):
        if not self._session:
            return
        try:
            atp = lt.add_torrent_params()
            atp.ti = lt.torrent_info(filepath)
            atp.save_path = save_path or self._cfg.get("default_save_path")
            atp.flags |= _FLAG_AUTO_MANAGED
            self._attach(self._session.add_torrent(atp))
        except Exception as e:
            logger.error(f"Failed to add torrent file: {e}")

    @pyqtSlot(str, str)
    def add_magnet(self, uri: str, save_path: str = ""):
        if not self._session:
            return

        if not uri or not uri.strip().startswith("magnet:"):
            logger.error(f"Invalid magnet URI: {uri[:80] if uri else '(empty)'}")
            return

        try:
            try:
                atp = lt.parse_magnet_uri(uri.strip())
            except AttributeError:
                atp = lt.parse_magnet_uri_dict(uri.strip())
            atp.save_path = save_path or self._cfg.get("default_save_path")
            atp.flags |= _FLAG_AUTO_MANAGED
            self._attach(self._session.add_torrent(atp))
        except Exception as e:
            logger.error(f"Failed to add magnet: {e}", exc_info=True)

    @pyqtSlot(str)
    def remove_torrent(self, info_hash: str):
        handle = self._handles.pop(info_hash, None)
        if self._plugins:
            self._plugins.detach(info_hash)
        if handle is not None and self._session:
            self._session.remove_torrent(handle)
            logger.info(f"Removed torrent: {info_hash}")

    # --- Internal: Attachment ---

    def _attach(self, handle):
        try:
            info_hash = self._metadata.torrent_id(handle)
        except Exception as e:
            logger.warning(f"Cannot identify torrent handle: {e}")
            return
        if self._plugins.attach(handle) is not None:
            if info_hash not in self._handles:
                self._handles[info_hash] = handle
                self.torrent_attached.emit(info_hash)
        else:
            self._handles.pop(info_hash, None)
            self._exempt_if_private(handle, info_hash)
            self.torrent_skipped.emit(info_hash)

    def _exempt_if_private(self, handle, info_hash: str):
        # Drops are session-wide ip_filter rules; private swarms must not see them
        try:
            if self._metadata.is_private(handle):
                handle.unset_flags(_FLAG_APPLY_IP_FILTER)
                logger.debug(f"Torrent {info_hash} is private, session ip filter not applied")
        except Exception as e:
            logger.warning(f"Cannot exempt private torrent {info_hash} from ip filter: {e}")

    # --- Internal: Alert processing ---

    def _process_alerts(self):
        if not self._session:
            return
        try:
            alerts = self._session.pop_alerts()
        except Exception as e:
            logger.error(f"Failed to pop alerts: {e}")
            return

        for alert in alerts:
            try:
                atype = type(alert)
                if atype == lt.add_torrent_alert:
                    if alert.error.value() == 0:
                        self._attach(alert.handle)
                elif atype == lt.metadata_received_alert:
                    self._attach(alert.handle)
                elif atype == lt.torrent_removed_alert:
                    info_hash = str(alert.info_hash)
                    self._handles.pop(info_hash, None)
                    self._plugins.detach(info_hash)
                elif atype == lt.peer_connect_alert:
                    self._on_peer_connect(alert)
                elif atype == lt.peer_disconnected_alert:
                    endpoint = _alert_endpoint(alert)
                    if endpoint:
                        self._plugins.connection_closed(str(alert.handle.info_hash()), endpoint)
                elif atype == lt.listen_succeeded_alert:
                    logger.info(f"Listening on {alert.address}:{alert.port}")
                elif atype == lt.listen_failed_alert:
                    logger.warning(f"Listen failed: {alert.error.message()}")
            except Exception as e:
                logger.debug(f"Alert error ({type(alert).__name__}): {e}")

    def _on_peer_connect(self, alert):
        endpoint = _alert_endpoint(alert)
        if endpoint is None:
            return
        info_hash = str(alert.handle.info_hash())
        if not self._plugins.is_attached(info_hash):
            return
        for info in alert.handle.get_peer_info():
            if (str(info.ip[0]), int(info.ip[1])) == endpoint:
                self._check_peer(info_hash, info)
                break

    # --- Internal: Peer sweep ---

    def _sweep_peers(self):
        if not self._session or not self._plugins:
            return
        for info_hash, handle in list(self._handles.items()):
            if not self._plugins.is_attached(info_hash):
                continue
            try:
                peers = handle.get_peer_info()
            except Exception as e:
                logger.debug(f"Peer list error for {info_hash}: {e}")
                continue
            for info in peers:
                try:
                    self._check_peer(info_hash, info)
                except Exception as e:
                    logger.debug(f"Peer check error for {info_hash}: {e}")

    def _check_peer(self, info_hash: str, info):
        peer = snapshot_from_peer_info(info)
        self._plugins.dispatch(
            info_hash, SessionPeerHandle(self._blocker, peer.ip, peer.port), peer)

    def _on_drop(self, info_hash: str, peer: PeerSnapshot, reason: str):
        logger.debug(f"Peer id of dropped peer {peer.endpoint}: {format_peer_id(peer.peer_id)}")
        self.peer_dropped.emit(info_hash, peer.ip, reason)


class ThreadedSession:
    """Convenience wrapper: creates worker + QThread, wires lifecycle.

    Usage:
        self._threaded = ThreadedSession(settings)
        self._threaded.worker.peer_dropped.connect(...)
        self._threaded.start()
        # On exit:
        self._threaded.stop()
    """

    def __init__(self, settings: Settings):
        self.thread = QThread()
        self.thread.setObjectName("PeerGuardSessionThread")
        # Snapshot all settings to a plain dict so the worker thread
        # never touches the SQLite-backed Settings object.
        cfg = settings.get_all()
        self.worker = SessionWorker(cfg)
        self.worker.moveToThread(self.thread)
        self.thread.started.connect(self.worker.initialize)

    def start(self):
        self.thread.start()

    def stop(self):
        """Shut down worker on its own thread, then stop the thread."""
        QMetaObject.invokeMethod(
            self.worker, "shutdown",
            Qt.ConnectionType.BlockingQueuedConnection
        )
        self.thread.quit()
        if not self.thread.wait(15000):
            logger.warning("Session thread did not stop in time, terminating")
            self.thread.terminate()
            self.thread.wait()
