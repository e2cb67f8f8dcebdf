"""Server side of the active bandwidth test.

A client saturates the link in both directions for a fixed window: it uploads
chunks and keeps asking for download chunks, then reports what it counted.
The resulting upload + download rate becomes the capacity estimate.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from ..errors import ProbeTimeout
from ..models import BPS_PER_MBPS

logger = logging.getLogger(__name__)


def bytes_to_mbps(num_bytes: int, duration_ms: float) -> float:
    if duration_ms <= 0:
        return 0.0
    return num_bytes * 8 / (duration_ms / 1000) / BPS_PER_MBPS


@dataclass(frozen=True)
class ProbeResult:
    upload: float
    download: float
    duration: float
    timed_out: bool = False

    @property
    def total(self) -> float:
        return self.upload + self.download

    def to_payload(self):
        return {
            "upload": self.upload,
            "download": self.download,
            "total": self.total,
            "duration": self.duration,
            "timedOut": self.timed_out,
        }


@dataclass
class ProbeSession:
    started_at: float
    uploaded: int = 0
    downloaded: int = 0


class ProbeService:
    def __init__(self, duration_ms=5000, safety_ms=1000, chunk_size=64 * 1024,
                 fallback_mbps=10.0, clock=time.monotonic):
        self.duration_ms = duration_ms
        self.safety_ms = safety_ms
        self.chunk_size = chunk_size
        self.fallback_mbps = fallback_mbps
        self._clock = clock
        self._sessions: Dict[str, ProbeSession] = {}
        self._lock = threading.Lock()

    @property
    def deadline_ms(self) -> int:
        return self.duration_ms + self.safety_ms

    def start(self, sid: str) -> ProbeSession:
        session = ProbeSession(started_at=self._clock())
        with self._lock:
            self._sessions[sid] = session
        logger.info("Bandwidth test started by %s", sid)
        return session

    def _session(self, sid: str) -> ProbeSession:
        with self._lock:
            session = self._sessions.get(sid)
            if session is None:
                # upload before start: open one implicitly
                session = self._sessions[sid] = ProbeSession(started_at=self._clock())
            return session

    def record_upload(self, sid: str, size: int) -> None:
        self._session(sid).uploaded += size

    def download_chunk(self, sid: str) -> bytes:
        session = self._session(sid)
        session.downloaded += self.chunk_size
        return os.urandom(self.chunk_size)

    def complete(self, sid: str, upload_bytes: int, download_bytes: int,
                 duration_ms: float) -> ProbeResult:
        """Turn a client's counters into a result.

        Raises:
            ProbeTimeout: when nothing usable was measured.
        """
        with self._lock:
            session: Optional[ProbeSession] = self._sessions.pop(sid, None)
        if session is not None:
            logger.debug(
                "Server-side counters for %s: %d up / %d down bytes",
                sid, session.uploaded, session.downloaded,
            )

        if duration_ms <= 0 or (upload_bytes == 0 and download_bytes == 0):
            raise ProbeTimeout()

        result = ProbeResult(
            upload=bytes_to_mbps(upload_bytes, duration_ms),
            download=bytes_to_mbps(download_bytes, duration_ms),
            duration=duration_ms,
            timed_out=duration_ms > self.deadline_ms,
        )
        if result.timed_out:
            logger.warning(
                "Bandwidth test from %s ran %.0f ms (limit %d ms), using partial counts",
                sid, duration_ms, self.deadline_ms,
            )
        logger.info(
            "Bandwidth test complete: upload %.2f Mbps, download %.2f Mbps, total %.2f Mbps",
            result.upload, result.download, result.total,
        )
        return result

    def fallback(self, sid: str) -> ProbeResult:
        """Conservative stand-in used when a probe produced no measurement."""
        with self._lock:
            self._sessions.pop(sid, None)
        logger.warning(
            "Bandwidth test from %s unusable, assuming %.2f Mbps", sid, self.fallback_mbps
        )
        return ProbeResult(
            upload=self.fallback_mbps, download=0.0, duration=0.0, timed_out=True
        )

    def discard(self, sid: str) -> None:
        with self._lock:
            self._sessions.pop(sid, None)
