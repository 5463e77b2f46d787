"""Per-connection short-circuit wrapper around a classifier.

A gate starts ACTIVE. Once a peer has completed its handshake and still does
not match, its client string and peer id are fixed for the rest of the
connection, so the gate moves to SUPPRESSED and never runs the classifier or
the geo lookup again. Pre-handshake non-matches keep the gate ACTIVE.
"""

from enum import Enum, auto

from peerguard.core.classifiers import Classifier
from peerguard.core.geoip import GeoLookup
from peerguard.core.peer import PeerSnapshot, ClassificationResult, NO_MATCH, UNKNOWN_COUNTRY


class GateState(Enum):
    ACTIVE = auto()
    SUPPRESSED = auto()


class FilterGate:

    def __init__(self, classifier: Classifier, geo: GeoLookup):
        self._classifier = classifier
        self._geo = geo
        self._state = GateState.ACTIVE

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def classifier(self) -> Classifier:
        return self._classifier

    def evaluate(self, peer: PeerSnapshot) -> ClassificationResult:
        if self._state is GateState.SUPPRESSED:
            return NO_MATCH

        country = self._geo.lookup(peer.ip) if self._classifier.uses_country else UNKNOWN_COUNTRY
        result = self._classifier.classify(peer, country)
        if result:
            return result

        if peer.handshake_complete:
            self._state = GateState.SUPPRESSED
        return NO_MATCH
