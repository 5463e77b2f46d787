"""Unit tests for peerguard.core.classifiers."""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import re
import unittest

from peerguard.core.classifiers import (
    BadPeerClassifier, UnknownPeerClassifier, OfflineDownloaderClassifier,
    MediaPlayerClassifier, build_classifiers, identify_vendor,
)
from peerguard.core.peer import PeerSnapshot, UNKNOWN_COUNTRY


def _peer(client="", pid=b"", port=6881, ip="1.2.3.4", handshake=True):
    if pid and len(pid) < 20:
        pid = pid + b"0123456789ab"[:20 - len(pid)]
    return PeerSnapshot(ip=ip, port=port, client=client, peer_id=pid,
                        handshake_complete=handshake)


class TestBadPeerClassifier(unittest.TestCase):

    def setUp(self):
        self.c = BadPeerClassifier()

    def test_leecher_peer_id(self):
        for tag in (b"XL", b"SD", b"XF", b"QD", b"BN", b"DL", b"TS", b"DT", b"HP"):
            result = self.c.classify(_peer(pid=b"-" + tag + b"1000-"), "US")
            self.assertTrue(result, tag)

    def test_configured_tag_only(self):
        c = BadPeerClassifier(peer_id_tags=["XL"])
        self.assertTrue(c.classify(_peer(pid=b"-XL1000-"), "US"))
        self.assertFalse(c.classify(_peer(pid=b"-SD1000-"), "US"))

    def test_peer_id_must_span_eight_bytes(self):
        self.assertFalse(self.c.classify(_peer(pid=b"-XL10000"), "US"))
        self.assertFalse(self.c.classify(_peer(pid=b"-XL100-x"), "US"))
        self.assertFalse(self.c.classify(_peer(pid=b"x-XL1000-"), "US"))

    def test_peer_id_ignored_before_handshake(self):
        self.assertFalse(self.c.classify(_peer(pid=b"-XL1000-", handshake=False), "US"))

    def test_genuine_client(self):
        self.assertFalse(self.c.classify(_peer("qBittorrent/4.5.0", b"-qB4500-"), "CN"))

    def test_ip_shaped_client(self):
        result = self.c.classify(_peer("7.10.35.366"), "US")
        self.assertTrue(result)
        self.assertIn("forged client", result.reason)

    def test_ip_shaped_must_be_whole_string(self):
        self.assertFalse(self.c.classify(_peer("Xunlei 7.10.35.366"), "US"))

    def test_fake_tag(self):
        self.assertTrue(self.c.classify(_peer("cacao_torrent"), "US"))

    def test_traffic_consumer_in_region(self):
        for client in ("dt/torrent", "HP/Torrent", "xm/torrent", "Gopeed dev",
                       "Rain 0.0.0", "Taipei-torrent", "Taipei-torrent dev"):
            self.assertTrue(self.c.classify(_peer(client), "CN"), client)

    def test_traffic_consumer_outside_region(self):
        for client in ("dt/torrent", "Taipei-torrent dev"):
            self.assertFalse(self.c.classify(_peer(client), "US"), client)
            self.assertFalse(self.c.classify(_peer(client), UNKNOWN_COUNTRY), client)

    def test_traffic_region_configurable(self):
        c = BadPeerClassifier(traffic_consume_region="ru")
        self.assertTrue(c.classify(_peer("dt/torrent"), "RU"))
        self.assertFalse(c.classify(_peer("dt/torrent"), "CN"))


class TestUnknownPeerClassifier(unittest.TestCase):

    def setUp(self):
        self.c = UnknownPeerClassifier(region="CN")

    def test_unidentified_client_in_region(self):
        self.assertTrue(self.c.classify(_peer("qTorrent 4.3.1"), "CN"))

    def test_unidentified_client_elsewhere(self):
        self.assertFalse(self.c.classify(_peer("qTorrent 4.3.1"), "DE"))

    def test_unknown_country_never_matches(self):
        self.assertFalse(self.c.classify(_peer("qTorrent 4.3.1"), UNKNOWN_COUNTRY))

    def test_libtorrent_unknown_marker(self):
        self.assertTrue(self.c.classify(_peer("Unknown [-XX1234-]"), "CN"))

    def test_known_clients(self):
        for client in ("qBittorrent/4.5.0", "Transmission 3.00", "µTorrent 3.5.5",
                       "Deluge 2.1.1", "libtorrent (Rasterbar) 2.0.9", "BitComet 2.01"):
            self.assertFalse(self.c.classify(_peer(client), "CN"), client)

    def test_clients_named_by_libtorrent_fingerprints(self):
        for client in ("Mainline 7.4.2", "BitTyrant 1.1", "ArcticTorrent 0.2", "Arctic Torrent 0.2",
                       "Xtorrent 0.1", "rqbit 5.0", "BiglyBT 3.4", "Tixati 3.19"):
            self.assertFalse(self.c.classify(_peer(client), "CN"), client)

    def test_unknown_marker_after_vendor_name(self):
        self.assertTrue(self.c.classify(_peer("libtorrent Unknown 0.1"), "CN"))

    def test_empty_client_is_no_signal(self):
        self.assertFalse(self.c.classify(_peer("", handshake=False), "CN"))


class TestOfflineDownloaderClassifier(unittest.TestCase):

    def setUp(self):
        self.c = OfflineDownloaderClassifier()

    def test_fake_transmission_high_port(self):
        self.assertTrue(self.c.classify(_peer("Transmission 2.94", port=65000), "CN"))

    def test_fake_transmission_standard_port(self):
        self.assertFalse(self.c.classify(_peer("Transmission 2.94", port=50000), "CN"))

    def test_fake_transmission_other_region(self):
        self.assertFalse(self.c.classify(_peer("Transmission 2.94", port=65000), "US"))

    def test_reused_libtorrent_peer_id(self):
        self.assertTrue(self.c.classify(_peer(pid=b"-LT1220-"), "NL"))
        self.assertTrue(self.c.classify(_peer(pid=b"-LT2070-"), "CN"))

    def test_reused_peer_id_other_region(self):
        self.assertFalse(self.c.classify(_peer(pid=b"-LT2070-"), "DE"))

    def test_other_libtorrent_version(self):
        self.assertFalse(self.c.classify(_peer(pid=b"-LT2080-"), "NL"))

    def test_branches_independent(self):
        # High port from NL only satisfies neither branch on its own
        self.assertFalse(self.c.classify(_peer("Transmission 2.94", port=65535), "NL"))
        self.assertTrue(self.c.classify(_peer("qBittorrent", b"-LT2070-", port=6881), "NL"))

    def test_configurable(self):
        c = OfflineDownloaderClassifier(min_port=60000, region="SG", reference_client="Deluge",
                                        peer_id_prefixes=["-DE13F0-"], peer_id_regions=["SG"])
        self.assertTrue(c.classify(_peer("Deluge 1.3.15", port=60001), "SG"))
        self.assertTrue(c.classify(_peer(pid=b"-DE13F0-"), "SG"))
        self.assertFalse(c.classify(_peer(pid=b"-LT2070-"), "SG"))


class TestMediaPlayerClassifier(unittest.TestCase):

    def setUp(self):
        self.c = MediaPlayerClassifier()

    def test_does_not_use_country(self):
        self.assertFalse(self.c.uses_country)

    def test_elementum_any_country(self):
        for country in ("CN", "US", UNKNOWN_COUNTRY):
            self.assertTrue(self.c.classify(_peer("Elementum 0.1.90", b"-qB4500-"), country))

    def test_stellar_player(self):
        self.assertTrue(self.c.classify(_peer("StellarPlayer 1.0"), UNKNOWN_COUNTRY))

    def test_player_peer_ids(self):
        for pid in (b"-SP0000-", b"-SP2999-", b"-SP3500-", b"-UWa1b2-"):
            self.assertTrue(self.c.classify(_peer(pid=pid), UNKNOWN_COUNTRY), pid)

    def test_player_peer_id_out_of_range(self):
        for pid in (b"-SP3600-", b"-SP4000-", b"-UW12-ab", b"-SP350-x"):
            self.assertFalse(self.c.classify(_peer(pid=pid), UNKNOWN_COUNTRY), pid)


class TestNoFalsePositives(unittest.TestCase):

    BENIGN_PEER_IDS = [
        b"-qB4500-", b"-TR3000-", b"-UT355W-", b"-DE211s-", b"-LT2090-",
        b"-AZ5770-", b"-BC0201-", b"M7-4-2--", b"\x00" * 8, b"-XX1234-",
    ]

    def test_benign_peer_ids(self):
        classifiers = build_classifiers({})
        for pid in self.BENIGN_PEER_IDS:
            for country in ("CN", "NL", "US", UNKNOWN_COUNTRY):
                for c in classifiers:
                    result = c.classify(_peer(pid=pid), country)
                    self.assertFalse(result, f"{c!r} matched {pid!r} in {country}")

    def test_short_and_empty_peer_ids(self):
        for c in build_classifiers({}):
            for pid in (b"", b"-", b"-XL1"):
                peer = PeerSnapshot("1.2.3.4", 6881, peer_id=pid, handshake_complete=True)
                self.assertFalse(c.classify(peer, "CN"))


class TestBuildClassifiers(unittest.TestCase):

    def test_defaults(self):
        classifiers = build_classifiers({})
        self.assertEqual(
            [type(c) for c in classifiers],
            [BadPeerClassifier, UnknownPeerClassifier, OfflineDownloaderClassifier, MediaPlayerClassifier],
        )

    def test_filtering_disabled(self):
        self.assertEqual(build_classifiers({"peer_filter_enabled": False}), [])

    def test_family_toggles(self):
        classifiers = build_classifiers({
            "drop_bad_peers": False,
            "drop_unknown_peers": True,
            "drop_offline_downloaders": False,
            "drop_media_players": False,
        })
        self.assertEqual(len(classifiers), 1)
        self.assertIsInstance(classifiers[0], UnknownPeerClassifier)

    def test_parameters_from_config(self):
        classifiers = build_classifiers({
            "drop_bad_peers": False,
            "drop_offline_downloaders": False,
            "drop_media_players": False,
            "unknown_peer_region": "RU",
        })
        self.assertTrue(classifiers[0].classify(_peer("qTorrent 4.3.1"), "RU"))
        self.assertFalse(classifiers[0].classify(_peer("qTorrent 4.3.1"), "CN"))

    def test_invalid_pattern_raises(self):
        with self.assertRaises(re.error):
            build_classifiers({"forged_client_patterns": ["(unclosed"]})


class TestIdentifyVendor(unittest.TestCase):

    def test_known(self):
        self.assertEqual(identify_vendor("qBittorrent/4.5.0"), "qBittorrent")
        self.assertEqual(identify_vendor("transmission 3.00"), "transmission")

    def test_unknown(self):
        self.assertIsNone(identify_vendor("qTorrent 4.3.1"))
        self.assertIsNone(identify_vendor("Unknown"))
        self.assertIsNone(identify_vendor(""))
        self.assertIsNone(identify_vendor("Unknown [-XX1234-]"))

    def test_fingerprint_table_names(self):
        self.assertEqual(identify_vendor("Mainline 7.4.2"), "Mainline")
        self.assertEqual(identify_vendor("BitTyrant 1.1"), "BitTyrant")

    def test_requires_word_boundary(self):
        self.assertIsNone(identify_vendor("Transmissionx 1.0"))


if __name__ == "__main__":
    unittest.main()
