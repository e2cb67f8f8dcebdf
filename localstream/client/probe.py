import asyncio
import logging
import os
import time

from ..services.probe import bytes_to_mbps

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class BandwidthTester:
    """Saturate the link to the server both ways and measure what got through.

    ``sio`` is a connected :class:`socketio.AsyncClient` (or anything with the
    same ``emit``/``on`` methods).
    """

    def __init__(self, sio, chunk_size=CHUNK_SIZE, clock=time.monotonic):
        self.sio = sio
        self.chunk_size = chunk_size
        self._clock = clock
        self.active = False
        self.upload_bytes = 0
        self.download_bytes = 0
        self._started_at = 0.0
        self._duration = 0.0
        self._download_done = None
        sio.on("bandwidth-test-download-chunk", self._on_download_chunk)

    def _elapsed(self) -> float:
        return self._clock() - self._started_at

    async def run(self, duration_ms=5000, safety_ms=1000):
        """Run one test and return ``{upload, download, total, duration}`` in Mbps.

        Raises:
            RuntimeError: a test is already running on this tester.
        """
        if self.active:
            raise RuntimeError("Bandwidth test already running")

        self.active = True
        self.upload_bytes = 0
        self.download_bytes = 0
        self._duration = duration_ms / 1000
        self._download_done = asyncio.Event()
        logger.info("Starting bandwidth test (%d ms)", duration_ms)
        try:
            await self.sio.emit("bandwidth-test-start")
            self._started_at = self._clock()
            await asyncio.gather(
                self._upload(),
                self._download((duration_ms + safety_ms) / 1000),
            )
            actual_ms = self._elapsed() * 1000

            result = {
                "upload": bytes_to_mbps(self.upload_bytes, actual_ms),
                "download": bytes_to_mbps(self.download_bytes, actual_ms),
                "duration": actual_ms,
            }
            result["total"] = result["upload"] + result["download"]
            logger.info(
                "Bandwidth test complete: upload %.2f Mbps, download %.2f Mbps, total %.2f Mbps",
                result["upload"], result["download"], result["total"],
            )
            await self.sio.emit("bandwidth-test-complete", {
                "uploadBytes": self.upload_bytes,
                "downloadBytes": self.download_bytes,
                "duration": actual_ms,
            })
            return result
        finally:
            self.active = False

    async def _upload(self):
        while self.active and self._elapsed() < self._duration:
            await self.sio.emit("bandwidth-test-upload", {
                "chunk": os.urandom(self.chunk_size),
                "size": self.chunk_size,
            })
            self.upload_bytes += self.chunk_size
            await asyncio.sleep(0)

    async def _download(self, safety_timeout):
        await self.sio.emit("bandwidth-test-download-request")
        try:
            await asyncio.wait_for(self._download_done.wait(), timeout=safety_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Download test hit the %.1f s safety timeout, keeping %d bytes",
                safety_timeout, self.download_bytes,
            )

    async def _on_download_chunk(self, data):
        if not self.active or self._download_done is None or self._download_done.is_set():
            return
        if self._elapsed() >= self._duration:
            self._download_done.set()
            return
        self.download_bytes += (data or {}).get("size") or self.chunk_size
        await self.sio.emit("bandwidth-test-download-request")

    def cancel(self):
        if self._download_done is not None:
            self._download_done.set()
        self.active = False
        logger.warning("Bandwidth test cancelled")
