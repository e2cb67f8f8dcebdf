import datetime
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

BPS_PER_MBPS = 1_000_000


@dataclass(frozen=True)
class QualityTier:
    id: str
    width: int
    height: int
    frame_rate: int
    bitrate_min: int
    bitrate_target: int
    bitrate_max: int

    def __post_init__(self):
        if not (0 < self.bitrate_min <= self.bitrate_target <= self.bitrate_max):
            raise ValueError(
                f"tier {self.id}: expected 0 < bitrateMin <= bitrateTarget <= bitrateMax"
            )

    @classmethod
    def from_preset(cls, tier_id: str, preset: Dict[str, Any]) -> "QualityTier":
        return cls(
            id=tier_id,
            width=int(preset["width"]),
            height=int(preset["height"]),
            frame_rate=int(preset["frameRate"]),
            bitrate_min=int(preset["bitrateMin"]),
            bitrate_target=int(preset["bitrateTarget"]),
            bitrate_max=int(preset["bitrateMax"]),
        )

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass
class CapacityEstimate:
    total_mbps: float = 0.0

    def __post_init__(self):
        if not math.isfinite(self.total_mbps) or self.total_mbps < 0:
            raise ValueError("capacity must be a finite number >= 0 Mbps")


@dataclass
class StreamerRegistration:
    stream_id: str
    tier_id: str
    connection_handle: Any
    allocated_bitrate: int = 0


@dataclass(frozen=True)
class AdmissionResult:
    admitted: bool
    tier_id: str
    allocated_bitrate: int = 0
    required_mbps: float = 0.0
    available_mbps: float = 0.0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "allowed": self.admitted,
            "allocatedBitrate": self.allocated_bitrate,
            "required": self.required_mbps,
            "available": self.available_mbps,
        }


@dataclass
class Stream:
    """A published camera as seen by viewers and the dashboard."""

    id: str
    name: str
    socket_id: str
    quality: str
    resolution: str = "unknown"
    frame_rate: Optional[float] = None
    status: str = "active"
    viewers: int = 0
    created_at: str = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc).isoformat()
    )
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "socketId": self.socket_id,
            "quality": self.quality,
            "status": self.status,
            "viewers": self.viewers,
            "createdAt": self.created_at,
            "stats": {
                "bitrate": 0,
                "fps": 0,
                "resolution": self.resolution,
                **self.stats,
            },
        }
