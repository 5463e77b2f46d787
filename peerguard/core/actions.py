"""Actions taken on peers that a filter matched, and the connection handle
interface the protocol engine provides for them."""

import errno
import logging
from enum import IntEnum

logger = logging.getLogger(__name__)


class DisconnectReason(IntEnum):
    CONNECTION_REFUSED = errno.ECONNREFUSED


class Operation(IntEnum):
    """Protocol layer a disconnect is attributed to (libtorrent operation_t)."""
    UNKNOWN = 0
    BITTORRENT = 1


class Severity(IntEnum):
    """libtorrent disconnect_severity_t. NORMAL is informational."""
    NORMAL = 0
    FAILURE = 1
    PEER_ERROR = 2


class PeerConnectionClosed(Exception):
    """Raised by a handle asked to disconnect a connection that is already gone."""


class PeerConnectionHandle:
    """Engine-owned handle for one peer connection."""

    @property
    def connection_id(self):
        raise NotImplementedError

    @property
    def closing(self) -> bool:
        return False

    def disconnect(self, reason: DisconnectReason, operation: Operation, severity: Severity):
        raise NotImplementedError


class ActionExecutor:

    def apply(self, handle: PeerConnectionHandle) -> bool:
        """Apply the action. Returns False if it was a no-op."""
        raise NotImplementedError


class DropConnection(ActionExecutor):
    """Force a disconnect, reported as a refused connection at normal severity."""

    def apply(self, handle: PeerConnectionHandle) -> bool:
        if handle.closing:
            return False
        try:
            handle.disconnect(DisconnectReason.CONNECTION_REFUSED,
                              Operation.BITTORRENT, Severity.NORMAL)
        except PeerConnectionClosed:
            logger.debug(f"Peer {handle.connection_id} already closed")
            return False
        return True
