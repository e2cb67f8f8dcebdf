from .controller import BitrateController, ClientBitrateState, Phase
from .probe import BandwidthTester
from .session import StreamerSession

__all__ = [
    "BandwidthTester",
    "BitrateController",
    "ClientBitrateState",
    "Phase",
    "StreamerSession",
]
