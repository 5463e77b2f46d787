"""Settings management for PeerGuard using SQLite."""

import json
import sqlite3
from pathlib import Path
from typing import Any, Optional

from peerguard.core.classifiers import (
    DEFAULT_BAD_PEER_ID_TAGS, DEFAULT_FORGED_CLIENT_PATTERNS,
    DEFAULT_TRAFFIC_CONSUME_PATTERNS, DEFAULT_MEDIA_PLAYER_CLIENTS,
    DEFAULT_MEDIA_PLAYER_PEER_ID, DEFAULT_OFFLINE_DOWNLOADER_PEER_IDS,
)


class Settings:
    """Persistent settings storage backed by SQLite."""

    DEFAULTS = {
        # Session
        "listen_port": 6881,
        "max_connections": 500,
        "dht_enabled": True,
        "lsd_enabled": True,
        "default_save_path": str(Path.home() / "Downloads"),
        # Peer filtering
        "peer_filter_enabled": True,
        "peer_filter_interval": 1000,  # ms between peer list sweeps
        "geoip_database_path": "",
        "drop_bad_peers": True,
        "drop_unknown_peers": True,
        "drop_offline_downloaders": True,
        "drop_media_players": True,
        # Bad peers
        "bad_peer_id_tags": DEFAULT_BAD_PEER_ID_TAGS,
        "forged_client_patterns": DEFAULT_FORGED_CLIENT_PATTERNS,
        "traffic_consume_patterns": DEFAULT_TRAFFIC_CONSUME_PATTERNS,
        "traffic_consume_region": "CN",
        # Unknown peers
        "unknown_peer_region": "CN",
        # Offline downloaders
        "offline_downloader_min_port": 65000,
        "offline_downloader_region": "CN",
        "offline_downloader_client": "Transmission",
        "offline_downloader_peer_ids": DEFAULT_OFFLINE_DOWNLOADER_PEER_IDS,
        "offline_downloader_peer_id_regions": ["NL", "CN"],
        # Media players
        "media_player_clients": DEFAULT_MEDIA_PLAYER_CLIENTS,
        "media_player_peer_id_pattern": DEFAULT_MEDIA_PLAYER_PEER_ID,
    }

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            config_dir = Path.home() / ".peerguard"
            config_dir.mkdir(parents=True, exist_ok=True)
            db_path = str(config_dir / "settings.db")

        self._db_path = db_path
        self._conn = sqlite3.connect(db_path)
        self._init_db()

    def _init_db(self):
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def get(self, key: str, default: Any = None) -> Any:
        cursor = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
        row = cursor.fetchone()
        if row is None:
            if default is not None:
                return default
            return json.loads(json.dumps(self.DEFAULTS.get(key)))
        try:
            return json.loads(row[0])
        except (json.JSONDecodeError, TypeError):
            return row[0]

    def set(self, key: str, value: Any):
        serialized = json.dumps(value)
        self._conn.execute(
            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
            (key, serialized)
        )
        self._conn.commit()

    def reset(self, key: str):
        """Forget a stored value so the default applies again."""
        self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        self._conn.commit()

    def get_all(self) -> dict:
        # Round-trip through JSON so callers never share the DEFAULTS lists
        result = json.loads(json.dumps(self.DEFAULTS))
        cursor = self._conn.execute("SELECT key, value FROM settings")
        for key, value in cursor.fetchall():
            try:
                result[key] = json.loads(value)
            except (json.JSONDecodeError, TypeError):
                result[key] = value
        return result

    def close(self):
        self._conn.close()
