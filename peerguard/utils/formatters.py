"""Formatting utilities for PeerGuard log output."""

from datetime import datetime


def format_peer_id(peer_id: bytes, length: int = 20) -> str:
    """Render a raw peer id as printable ASCII, escaping other bytes as %XX."""
    if not peer_id:
        return "--"
    out = []
    for b in bytes(peer_id[:length]):
        if 0x20 < b < 0x7F and b != 0x25:
            out.append(chr(b))
        else:
            out.append(f"%{b:02X}")
    return "".join(out)


def format_endpoint(ip: str, port: int) -> str:
    """Format ip/port, bracketing IPv6 addresses."""
    if ":" in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def format_timestamp(ts: float) -> str:
    """Format Unix timestamp to readable date/time."""
    if ts <= 0:
        return "--"
    dt = datetime.fromtimestamp(ts)
    return dt.strftime("%b %d, %Y %I:%M %p")


def format_drop(entry: dict) -> str:
    """One-line summary of a drop log entry."""
    endpoint = format_endpoint(entry.get("ip", ""), entry.get("port", 0))
    client = entry.get("client") or "--"
    return f"{format_timestamp(entry.get('time', 0))}  {endpoint}  {client}  {entry.get('reason', '')}"
