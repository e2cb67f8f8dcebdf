"""Bandwidth admission and fair-share reallocation for active streamers.

Every streamer gets an equal share of the measured capacity, clipped to the
ceiling of its quality tier. A new streamer is admitted only if its share at
the future headcount still reaches the tier's floor. Capacity that a
tier-capped streamer leaves unused is not handed to the others.

All mutations go through one re-entrant lock so that a check-then-admit
sequence (see :meth:`AllocationEngine.request_admission`) cannot interleave
with another admission or a removal.
"""

import logging
import threading
from typing import Any, Dict, Optional, Tuple

from ..models import (
    BPS_PER_MBPS,
    AdmissionResult,
    CapacityEstimate,
    StreamerRegistration,
)
from .catalog import QualityTierCatalog

logger = logging.getLogger(__name__)


class AllocationEngine:
    def __init__(self, catalog: QualityTierCatalog):
        self.catalog = catalog
        self.capacity = CapacityEstimate()
        self.registrations: Dict[str, StreamerRegistration] = {}
        self.lock = threading.RLock()

    def set_capacity(self, mbps: float) -> None:
        """Replace the capacity estimate. Does not reallocate by itself."""
        with self.lock:
            self.capacity = CapacityEstimate(float(mbps))
        logger.info("Total available bandwidth set to %.2f Mbps", self.capacity.total_mbps)

    def evaluate_admission(self, tier_id: str, stream_id: Optional[str] = None) -> AdmissionResult:
        """Decide whether one more streamer on ``tier_id`` fits.

        Raises:
            UnknownTier: if the tier is not in the catalog.
        """
        tier = self.catalog.require(tier_id)
        with self.lock:
            future_count = len(self.registrations) + 1
            fair_share_mbps = self.capacity.total_mbps / future_count

        candidate = min(tier.bitrate_max, round(fair_share_mbps * BPS_PER_MBPS))
        if candidate < tier.bitrate_min:
            logger.info(
                "Rejecting %s (%s): fair share %.2f Mbps < tier minimum %.2f Mbps",
                stream_id or "unknown", tier_id, fair_share_mbps,
                tier.bitrate_min / BPS_PER_MBPS,
            )
            return AdmissionResult(
                admitted=False,
                tier_id=tier_id,
                required_mbps=tier.bitrate_min / BPS_PER_MBPS,
                available_mbps=fair_share_mbps,
            )

        logger.info(
            "Accepting %s (%s) at %.2f Mbps (%d streamers)",
            stream_id or "unknown", tier_id, candidate / BPS_PER_MBPS, future_count,
        )
        return AdmissionResult(
            admitted=True,
            tier_id=tier_id,
            allocated_bitrate=candidate,
            required_mbps=tier.bitrate_min / BPS_PER_MBPS,
            available_mbps=fair_share_mbps,
        )

    def admit(self, stream_id: str, tier_id: str, connection_handle: Any) -> Dict[str, int]:
        """Register a streamer that was already found admissible and reallocate.

        Re-admitting an existing ``stream_id`` replaces its registration.
        """
        with self.lock:
            self.registrations[stream_id] = StreamerRegistration(
                stream_id=stream_id,
                tier_id=tier_id,
                connection_handle=connection_handle,
            )
            logger.info("Added streamer %s (%s)", stream_id, tier_id)
            return self.reallocate_all()

    def request_admission(
        self, stream_id: str, tier_id: str, connection_handle: Any
    ) -> Tuple[AdmissionResult, Dict[str, int]]:
        """Evaluate and, if admitted, register in one critical section.

        Returns the admission result and the fresh allocation mapping (empty
        when the streamer was refused).
        """
        with self.lock:
            result = self.evaluate_admission(tier_id, stream_id)
            if not result.admitted:
                return result, {}
            return result, self.admit(stream_id, tier_id, connection_handle)

    def remove(self, stream_id: str) -> Dict[str, int]:
        with self.lock:
            registration = self.registrations.pop(stream_id, None)
            if registration is not None:
                logger.info("Removed streamer %s (%s)", stream_id, registration.tier_id)
            return self.reallocate_all()

    def reallocate_all(self) -> Dict[str, int]:
        """Recompute every registration's allocation at the current headcount."""
        with self.lock:
            allocations: Dict[str, int] = {}
            count = len(self.registrations)
            if count == 0:
                return allocations

            fair_share_bps = round(self.capacity.total_mbps / count * BPS_PER_MBPS)
            for stream_id, registration in self.registrations.items():
                tier = self.catalog.get(registration.tier_id)
                if tier is None:
                    logger.warning(
                        "Unknown quality tier %r for %s, keeping %d bps",
                        registration.tier_id, stream_id, registration.allocated_bitrate,
                    )
                    continue
                registration.allocated_bitrate = min(tier.bitrate_max, fair_share_bps)
                allocations[stream_id] = registration.allocated_bitrate

            logger.info(
                "Reallocated %.2f Mbps across %d streamers",
                self.capacity.total_mbps, count,
            )
            return allocations

    def allocation_for(self, stream_id: str) -> Optional[int]:
        with self.lock:
            registration = self.registrations.get(stream_id)
            return registration.allocated_bitrate if registration else None

    def handle_for(self, stream_id: str) -> Any:
        with self.lock:
            registration = self.registrations.get(stream_id)
            return registration.connection_handle if registration else None

    def status(self) -> Dict[str, Any]:
        with self.lock:
            streamers = [
                {"id": r.stream_id, "quality": r.tier_id, "bitrate": r.allocated_bitrate}
                for r in self.registrations.values()
            ]
            total = self.capacity.total_mbps

        used = sum(s["bitrate"] for s in streamers) / BPS_PER_MBPS
        return {
            "totalBandwidth": total,
            "usedBandwidth": used,
            "availableBandwidth": max(0.0, total - used),
            "activeStreamers": len(streamers),
            "streamers": streamers,
        }

    def reset(self) -> None:
        with self.lock:
            self.capacity = CapacityEstimate()
            self.registrations.clear()
        logger.info("Allocation engine reset")

    def __contains__(self, stream_id) -> bool:
        with self.lock:
            return stream_id in self.registrations

    def __len__(self) -> int:
        with self.lock:
            return len(self.registrations)
