"""Peer classifiers: one heuristic family per class.

Inspired by qBittorrent Enhanced Edition's peer blacklist plugins. Every
classifier is a pure predicate over (PeerSnapshot, country code); patterns are
compiled once when the classifier is built and shared by all evaluations.

Peer-id patterns always span exactly the first 8 bytes of the peer id
(Azureus style: '-' + 2 char tag + 4 version chars + '-').
"""

import re
from typing import Iterable, List, Optional, Sequence

from peerguard.core.peer import PeerSnapshot, ClassificationResult, NO_MATCH


DEFAULT_BAD_PEER_ID_TAGS = ["XL", "SD", "XF", "QD", "BN", "DL", "TS", "DT", "HP"]
DEFAULT_FORGED_CLIENT_PATTERNS = [r"\d+\.\d+\.\d+\.\d+", "cacao_torrent"]
DEFAULT_TRAFFIC_CONSUME_PATTERNS = [
    "(dt|hp|xm)/torrent",
    "Gopeed dev",
    r"Rain 0\.0\.0",
    "Taipei-torrent( dev)?",
]
DEFAULT_MEDIA_PLAYER_CLIENTS = ["StellarPlayer", "Elementum"]
DEFAULT_MEDIA_PLAYER_PEER_ID = r"-(UW\w{4}|SP([0-2]\d{3}|3[0-5]\d{2}))-"
DEFAULT_OFFLINE_DOWNLOADER_PEER_IDS = ["-LT1220-", "-LT2070-"]

# Client names as reported by libtorrent's identify_client, plus clients that
# announce themselves through the extension handshake.
KNOWN_CLIENTS = [
    # libtorrent's Azureus-style and Shadow-style fingerprint table
    "aTorrent", "ABC", "AnyEvent BitTorrent", "Ares", "Arctic Torrent", "ArcticTorrent",
    "Artemis", "Avicora", "BitPump", "Azureus", "BitBuddy", "BitComet", "baretorrent",
    "Bitflu", "BTG", "BitBlinder", "BitTorrent Pro", "BitRocket", "BTSlave", "BitTorrent",
    "BigUp", "BitWombat", "BittorrentX", "Enhanced CTorrent", "CTorrent", "Deluge",
    "Propagate Data Client", "EBit", "electric sheep", "FileCroc", "FoxTorrent",
    "Freebox BitTorrent", "GSTorrent", "Hekate", "Halite", "Hydranode", "iLivid", "KGet",
    "KTorrent", "LeechCraft", "LH-ABC", "Linkage", "Lphant", "libtorrent", "LimeWire",
    "Mainline", "MLDonkey", "MonoTorrent", "Mono Torrent", "MooPolice", "Miro",
    "Moonlight Torrent", "Net Transport", "Osprey Permaseed", "OneSwarm", "OmegaTorrent",
    "Pando", "BTQueue", "QQDownload", "Qt 4", "Tribler", "Shadow", "Swiftbit", "ShareNet",
    "SwarmScope", "SymTorrent", "Shareaza", "BitTornado", "Torch", "Torrent.NET",
    "Transmission", "TorrentStorm", "TuoTu", "UPnP", "uLeecher", "uTorrent", "µTorrent",
    "Vagaa", "BitLet", "FireTorrent", "Xfplay", "Xunlei", "XSwifter", "XanTorrent",
    "Xtorrent", "ZipTorrent", "rTorrent", "pHoeniX", "qBittorrent", "SharkTorrent",
    # generic fingerprints
    "BitTyrant", "Opera", "BitLord", "BitSpirit", "Experimental",
    # extension-handshake names
    "libTorrent", "Vuze", "BiglyBT", "Tixati", "aria2", "FlashGet", "Thunder",
    "FrostWire", "PicoTorrent", "Free Download Manager", "FDM", "Motrix", "WebTorrent",
    "Tonido", "Folx", "Flud", "Fopnu", "Torrentflux", "Bitport", "Unworkable",
    "TorrenTopia", "Tomato", "rqbit", "anacrolix", "Fragments", "Popcorn Time",
]

# libtorrent reports fingerprints it cannot map to a vendor as "Unknown ..."
LIBTORRENT_UNKNOWN_MARKER = "Unknown"

_KNOWN_CLIENT_RE = re.compile(
    r"(?:%s)\b" % "|".join(re.escape(n) for n in sorted(KNOWN_CLIENTS, key=len, reverse=True)),
    re.IGNORECASE,
)


def _peer_id_tag_pattern(tags: Iterable[str]) -> Optional[re.Pattern]:
    """Compile '-TT####-' over the given 2-char tags."""
    alternatives = [re.escape(t.encode("ascii")) for t in tags if len(t) == 2]
    if not alternatives:
        return None
    return re.compile(rb"-(?:" + b"|".join(alternatives) + rb")\d{4}-")


def _peer_id_literal_pattern(prefixes: Iterable[str]) -> Optional[re.Pattern]:
    """Compile an alternation of exact 8-byte peer-id prefixes."""
    alternatives = [re.escape(p.encode("ascii")) for p in prefixes if len(p) == 8]
    if not alternatives:
        return None
    return re.compile(b"|".join(alternatives))


def _text_pattern(patterns: Sequence[str], flags: int = 0) -> Optional[re.Pattern]:
    if not patterns:
        return None
    return re.compile("|".join(f"(?:{p})" for p in patterns), flags)


def _fullmatch(pattern: Optional[re.Pattern], value) -> bool:
    return bool(pattern is not None and value and pattern.fullmatch(value))


def identify_vendor(client: str) -> Optional[str]:
    """Return the known vendor name a client string starts with, if any.

    Strings carrying libtorrent's "Unknown" marker never identify a vendor.
    """
    if not client or LIBTORRENT_UNKNOWN_MARKER in client:
        return None
    m = _KNOWN_CLIENT_RE.match(client.strip())
    return m.group(0) if m else None


class Classifier:
    """A pure predicate over (peer, country).

    uses_country tells the gate whether a geo lookup is needed before
    classify() is called; classifiers that ignore the country get "unknown".
    """

    name = "classifier"
    uses_country = True

    def classify(self, peer: PeerSnapshot, country: str) -> ClassificationResult:
        raise NotImplementedError

    def _match(self, detail: str) -> ClassificationResult:
        return ClassificationResult(True, f"{self.name}: {detail}")

    def __repr__(self):
        return f"<{type(self).__name__}>"


class BadPeerClassifier(Classifier):
    """Disguised or forged clients: leecher peer-id tags, fake user agents,
    and traffic-inflation tools in the region where they are prevalent."""

    name = "bad peer"

    def __init__(self, peer_id_tags: Sequence[str] = DEFAULT_BAD_PEER_ID_TAGS,
                 forged_client_patterns: Sequence[str] = DEFAULT_FORGED_CLIENT_PATTERNS,
                 traffic_consume_patterns: Sequence[str] = DEFAULT_TRAFFIC_CONSUME_PATTERNS,
                 traffic_consume_region: str = "CN"):
        self._peer_id_re = _peer_id_tag_pattern(peer_id_tags)
        self._forged_re = _text_pattern(forged_client_patterns)
        self._consume_re = _text_pattern(traffic_consume_patterns, re.IGNORECASE)
        self._consume_region = traffic_consume_region.upper()

    def classify(self, peer: PeerSnapshot, country: str) -> ClassificationResult:
        if country == self._consume_region and _fullmatch(self._consume_re, peer.client):
            return self._match(f"traffic consumer '{peer.client}'")
        if _fullmatch(self._peer_id_re, peer.peer_id_prefix):
            return self._match(f"peer id {peer.peer_id_prefix.decode('ascii', 'replace')}")
        if _fullmatch(self._forged_re, peer.client):
            return self._match(f"forged client '{peer.client}'")
        return NO_MATCH


class UnknownPeerClassifier(Classifier):
    """Clients that do not identify as any known vendor, from one region."""

    name = "unknown peer"

    def __init__(self, region: str = "CN"):
        self._region = region.upper()

    def classify(self, peer: PeerSnapshot, country: str) -> ClassificationResult:
        # An empty client string is no evidence either way
        if not peer.client or country != self._region:
            return NO_MATCH
        if identify_vendor(peer.client) is None:
            return self._match(f"unidentified client '{peer.client}' from {country}")
        return NO_MATCH


class OfflineDownloaderClassifier(Classifier):
    """Cloud "offline download" services posing as genuine clients.

    Two independent branches: a reference client name on a high port from one
    region, or reused libtorrent peer-id versions from a small set of regions.
    """

    name = "offline downloader"

    def __init__(self, min_port: int = 65000, region: str = "CN",
                 reference_client: str = "Transmission",
                 peer_id_prefixes: Sequence[str] = DEFAULT_OFFLINE_DOWNLOADER_PEER_IDS,
                 peer_id_regions: Sequence[str] = ("NL", "CN")):
        self._min_port = min_port
        self._region = region.upper()
        self._reference_client = reference_client
        self._peer_id_re = _peer_id_literal_pattern(peer_id_prefixes)
        self._peer_id_regions = frozenset(r.upper() for r in peer_id_regions)

    def classify(self, peer: PeerSnapshot, country: str) -> ClassificationResult:
        if (peer.port >= self._min_port and country == self._region
                and self._reference_client and self._reference_client in peer.client):
            return self._match(f"fake {self._reference_client} on port {peer.port}")
        if country in self._peer_id_regions and _fullmatch(self._peer_id_re, peer.peer_id_prefix):
            return self._match(f"reused peer id {peer.peer_id_prefix.decode('ascii', 'replace')}")
        return NO_MATCH


class MediaPlayerClassifier(Classifier):
    """Streaming-only clients that download and never seed."""

    name = "media player"
    uses_country = False

    def __init__(self, client_names: Sequence[str] = DEFAULT_MEDIA_PLAYER_CLIENTS,
                 peer_id_pattern: str = DEFAULT_MEDIA_PLAYER_PEER_ID):
        self._client_names = tuple(n for n in client_names if n)
        self._peer_id_re = re.compile(peer_id_pattern.encode("ascii")) if peer_id_pattern else None

    def classify(self, peer: PeerSnapshot, country: str) -> ClassificationResult:
        for name in self._client_names:
            if name in peer.client:
                return self._match(f"client '{peer.client}'")
        if _fullmatch(self._peer_id_re, peer.peer_id_prefix):
            return self._match(f"peer id {peer.peer_id_prefix.decode('ascii', 'replace')}")
        return NO_MATCH


def build_classifiers(cfg: dict) -> List[Classifier]:
    """Build the enabled classifier families from a settings dict.

    Missing keys fall back to the built-in defaults. Invalid regular
    expressions raise re.error here rather than on the session thread.
    """
    classifiers: List[Classifier] = []
    if not cfg.get("peer_filter_enabled", True):
        return classifiers

    if cfg.get("drop_bad_peers", True):
        classifiers.append(BadPeerClassifier(
            peer_id_tags=cfg.get("bad_peer_id_tags", DEFAULT_BAD_PEER_ID_TAGS),
            forged_client_patterns=cfg.get("forged_client_patterns", DEFAULT_FORGED_CLIENT_PATTERNS),
            traffic_consume_patterns=cfg.get("traffic_consume_patterns", DEFAULT_TRAFFIC_CONSUME_PATTERNS),
            traffic_consume_region=cfg.get("traffic_consume_region", "CN"),
        ))
    if cfg.get("drop_unknown_peers", True):
        classifiers.append(UnknownPeerClassifier(
            region=cfg.get("unknown_peer_region", "CN"),
        ))
    if cfg.get("drop_offline_downloaders", True):
        classifiers.append(OfflineDownloaderClassifier(
            min_port=int(cfg.get("offline_downloader_min_port", 65000)),
            region=cfg.get("offline_downloader_region", "CN"),
            reference_client=cfg.get("offline_downloader_client", "Transmission"),
            peer_id_prefixes=cfg.get("offline_downloader_peer_ids", DEFAULT_OFFLINE_DOWNLOADER_PEER_IDS),
            peer_id_regions=cfg.get("offline_downloader_peer_id_regions", ["NL", "CN"]),
        ))
    if cfg.get("drop_media_players", True):
        classifiers.append(MediaPlayerClassifier(
            client_names=cfg.get("media_player_clients", DEFAULT_MEDIA_PLAYER_CLIENTS),
            peer_id_pattern=cfg.get("media_player_peer_id_pattern", DEFAULT_MEDIA_PLAYER_PEER_ID),
        ))
    return classifiers
