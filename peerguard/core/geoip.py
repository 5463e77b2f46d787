"""IP to country lookup used by the region-aware peer filters.

Lookups run inline on the session thread for every evaluated peer, so only
in-memory sources are supported: a memory-mapped MaxMind database, or a static
CIDR table. A lookup never raises; anything it cannot resolve is "unknown".
"""

import ipaddress
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import maxminddb

from peerguard.core.peer import UNKNOWN_COUNTRY

logger = logging.getLogger(__name__)


def _parse_public_address(ip: str):
    """Return an ip_address object, or None for malformed / non-routable input."""
    try:
        addr = ipaddress.ip_address(str(ip).strip())
    except ValueError:
        return None
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped:
        addr = addr.ipv4_mapped
    if (addr.is_private or addr.is_loopback or addr.is_link_local
            or addr.is_multicast or addr.is_reserved or addr.is_unspecified):
        return None
    return addr


class GeoLookup:
    """Base interface: lookup(ip) -> two-letter country code or "unknown"."""

    def lookup(self, ip: str) -> str:
        raise NotImplementedError

    def close(self):
        pass


class MaxMindGeoLookup(GeoLookup):
    """Country lookup backed by a MaxMind (GeoLite2/DB-IP) .mmdb file."""

    def __init__(self, db_path: str, cache_size: int = 4096):
        self._db_path = db_path
        self._reader = maxminddb.open_database(db_path, maxminddb.MODE_MMAP)
        self._cached_lookup = lru_cache(maxsize=cache_size)(self._resolve)
        logger.info(f"Opened GeoIP database: {db_path}")

    def lookup(self, ip: str) -> str:
        return self._cached_lookup(str(ip))

    def _resolve(self, ip: str) -> str:
        addr = _parse_public_address(ip)
        if addr is None or self._reader is None:
            return UNKNOWN_COUNTRY
        try:
            record = self._reader.get(addr)
        except (ValueError, maxminddb.InvalidDatabaseError) as e:
            logger.debug(f"GeoIP lookup failed for {ip}: {e}")
            return UNKNOWN_COUNTRY
        if not isinstance(record, dict):
            return UNKNOWN_COUNTRY
        country = record.get("country") or record.get("registered_country") or {}
        code = country.get("iso_code") if isinstance(country, dict) else None
        return code.upper() if code else UNKNOWN_COUNTRY

    def close(self):
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        self._cached_lookup.cache_clear()


class StaticGeoLookup(GeoLookup):
    """Country lookup from an in-memory {cidr: country} table.

    Most specific network wins when ranges overlap.
    """

    def __init__(self, table: Optional[Dict[str, str]] = None):
        self._networks: List[Tuple[object, str]] = []
        for cidr, code in (table or {}).items():
            network = ipaddress.ip_network(cidr, strict=False)
            self._networks.append((network, code.upper()))
        self._networks.sort(key=lambda item: item[0].prefixlen, reverse=True)

    def lookup(self, ip: str) -> str:
        addr = _parse_public_address(ip)
        if addr is None:
            return UNKNOWN_COUNTRY
        for network, code in self._networks:
            if addr.version == network.version and addr in network:
                return code
        return UNKNOWN_COUNTRY

    def __len__(self) -> int:
        return len(self._networks)


def open_geo_lookup(db_path: str) -> GeoLookup:
    """Open the configured database, falling back to an empty static table."""
    if db_path and Path(db_path).is_file():
        try:
            return MaxMindGeoLookup(db_path)
        except (OSError, ValueError, maxminddb.InvalidDatabaseError) as e:
            logger.error(f"Failed to open GeoIP database {db_path}: {e}")
    else:
        logger.warning("No GeoIP database configured, all peers resolve to 'unknown'")
    return StaticGeoLookup()
