from .allocation import AllocationEngine
from .catalog import QualityTierCatalog
from .probe import ProbeResult, ProbeService
from .registry import StreamRegistry
from .relay import SignalingRelay

__all__ = [
    "AllocationEngine",
    "ProbeResult",
    "ProbeService",
    "QualityTierCatalog",
    "SignalingRelay",
    "StreamRegistry",
]
