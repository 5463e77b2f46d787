"""Unit tests for peerguard.utils.formatters."""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import unittest
from peerguard.utils.formatters import (
    format_peer_id, format_endpoint, format_timestamp, format_drop
)


class TestFormatPeerId(unittest.TestCase):
    def test_empty(self):
        self.assertEqual(format_peer_id(b""), "--")

    def test_printable(self):
        self.assertEqual(format_peer_id(b"-qB4500-abcdefghijkl"), "-qB4500-abcdefghijkl")

    def test_binary_escaped(self):
        self.assertEqual(format_peer_id(b"-XL0012-\x00\xff"), "-XL0012-%00%FF")

    def test_percent_escaped(self):
        self.assertEqual(format_peer_id(b"a%b"), "a%25b")

    def test_truncated(self):
        self.assertEqual(format_peer_id(b"x" * 30), "x" * 20)


class TestFormatEndpoint(unittest.TestCase):
    def test_ipv4(self):
        self.assertEqual(format_endpoint("1.2.3.4", 6881), "1.2.3.4:6881")

    def test_ipv6(self):
        self.assertEqual(format_endpoint("::1", 6881), "[::1]:6881")


class TestFormatTimestamp(unittest.TestCase):
    def test_zero(self):
        self.assertEqual(format_timestamp(0), "--")

    def test_valid(self):
        result = format_timestamp(1700000000)
        self.assertIn("2023", result)


class TestFormatDrop(unittest.TestCase):
    def test_entry(self):
        line = format_drop({"time": 1700000000, "ip": "1.2.3.4", "port": 6881,
                            "client": "Elementum", "reason": "media player: client 'Elementum'"})
        self.assertIn("1.2.3.4:6881", line)
        self.assertIn("Elementum", line)
        self.assertIn("media player", line)

    def test_missing_client(self):
        line = format_drop({"time": 0, "ip": "1.2.3.4", "port": 1, "client": "", "reason": "x"})
        self.assertIn("--", line)


if __name__ == "__main__":
    unittest.main()
