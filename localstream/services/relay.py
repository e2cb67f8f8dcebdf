"""Connection bookkeeping and message routing for the signaling server.

The relay owns who is connected and in which role, forwards offer/answer/ICE
payloads between two sockets without looking inside them, and turns
streamer joins and leaves into admission decisions and reallocation pushes.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..errors import ProbeTimeout
from ..messages import (
    BandwidthTestComplete,
    RegisterStreamer,
    RegisterViewer,
    StatsUpdate,
)
from ..models import AdmissionResult, Stream
from .allocation import AllocationEngine
from .probe import ProbeService
from .registry import StreamRegistry

logger = logging.getLogger(__name__)

STREAMER = "streamer"
VIEWER = "viewer"


@dataclass
class Connection:
    sid: str
    role: Optional[str] = None
    stream_id: Optional[str] = None


class SignalingRelay:
    def __init__(self, engine: AllocationEngine, registry: StreamRegistry,
                 probe: ProbeService, emitter=None, viewer_base_url="http://localhost:3000"):
        self.engine = engine
        self.registry = registry
        self.probe = probe
        self.emitter = emitter
        self.viewer_base_url = viewer_base_url
        self._connections: Dict[str, Connection] = {}
        self._lock = threading.Lock()

    # -- plumbing ---------------------------------------------------------

    def _emit(self, event: str, data: Any, to: Optional[str] = None) -> None:
        if self.emitter is None:
            return
        if to is None:
            self.emitter.emit(event, data)
        else:
            self.emitter.emit(event, data, to=to)

    def connection(self, sid: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(sid)

    def is_connected(self, sid: str) -> bool:
        with self._lock:
            return sid in self._connections

    def on_connect(self, sid: str) -> Connection:
        conn = Connection(sid)
        with self._lock:
            self._connections[sid] = conn
        logger.info("Client connected: %s", sid)
        return conn

    def _allocations(self) -> Dict[str, int]:
        return {s["id"]: s["bitrate"] for s in self.engine.status()["streamers"]}

    def broadcast_streams(self) -> None:
        self._emit("streams-updated", self.registry.to_list())

    def broadcast_status(self) -> None:
        self._emit("bandwidth-status", self.engine.status())

    def _push_reallocations(self, previous: Dict[str, int], allocations: Dict[str, int],
                            reason: str, skip: Optional[str] = None) -> None:
        active = len(self.engine)
        for stream_id, bitrate in allocations.items():
            if stream_id == skip or previous.get(stream_id) == bitrate:
                continue
            handle = self.engine.handle_for(stream_id)
            if handle is None or not self.is_connected(handle):
                logger.warning("No live connection for %s, reallocation not sent", stream_id)
                continue
            logger.info("Reallocating %s to %.2f Mbps (%s)", stream_id, bitrate / 1e6, reason)
            self._emit(
                "bandwidth-reallocated",
                {"newBitrate": bitrate, "reason": reason, "activeStreamers": active},
                to=handle,
            )

    # -- streamers --------------------------------------------------------

    def on_admission_request(self, sid: str, message: RegisterStreamer) -> AdmissionResult:
        """Admit or refuse a streamer and notify everyone affected.

        Raises:
            UnknownTier: the requested quality is not in the catalog.
        """
        tier_id = message.quality or self.engine.catalog.default_tier
        self.engine.catalog.require(tier_id)
        conn = self.connection(sid) or self.on_connect(sid)
        if conn.role == STREAMER and conn.stream_id != message.stream_id:
            self._drop_streamer(conn, reason="streamer-replaced")
            conn.role, conn.stream_id = None, None

        with self.engine.lock:
            previous = self._allocations()
            result, allocations = self.engine.request_admission(
                message.stream_id, tier_id, sid
            )

        if not result.admitted:
            self._emit(
                "bandwidth-insufficient",
                {
                    "required": result.required_mbps,
                    "available": result.available_mbps,
                    "message": (
                        f"Insufficient bandwidth: {result.required_mbps:.1f} Mbps required, "
                        f"{result.available_mbps:.1f} Mbps available"
                    ),
                },
                to=sid,
            )
            return result

        tier = self.engine.catalog.get(tier_id)
        stream = Stream(
            id=message.stream_id,
            name=message.name or f"Camera {len(self.registry) + 1}",
            socket_id=sid,
            quality=tier_id,
            resolution=message.resolution if message.resolution != "unknown" else tier.resolution,
            frame_rate=message.frame_rate or tier.frame_rate,
        )
        self.registry.add(stream)
        if conn.role == VIEWER:
            self.registry.remove_viewer(conn.stream_id)
        conn.role, conn.stream_id = STREAMER, stream.id
        logger.info("Streamer registered: %s (%s)", stream.name, stream.id)

        self._emit(
            "registered",
            {
                "streamId": stream.id,
                "viewerURL": f"{self.viewer_base_url}/viewer?stream={stream.id}",
                "allocatedBitrate": allocations.get(stream.id, result.allocated_bitrate),
            },
            to=sid,
        )
        self._push_reallocations(previous, allocations, "streamer-joined", skip=stream.id)
        self.broadcast_status()
        self.broadcast_streams()
        return result

    def _drop_streamer(self, conn: Connection, reason: str) -> None:
        if self.engine.handle_for(conn.stream_id) != conn.sid:
            # stream id was taken over by another connection
            return
        self.registry.remove(conn.stream_id)
        with self.engine.lock:
            previous = self._allocations()
            allocations = self.engine.remove(conn.stream_id)
        logger.info("Streamer removed: %s", conn.stream_id)
        self._push_reallocations(previous, allocations, reason)
        self.broadcast_status()

    def on_disconnect(self, sid: str) -> None:
        with self._lock:
            conn = self._connections.pop(sid, None)
        self.probe.discard(sid)
        logger.info("Client disconnected: %s", sid)
        if conn is None or conn.stream_id is None:
            return

        if conn.role == STREAMER:
            self._drop_streamer(conn, reason="streamer-left")
        elif conn.role == VIEWER:
            self.registry.remove_viewer(conn.stream_id)
        self.broadcast_streams()

    # -- viewers ----------------------------------------------------------

    def on_register_viewer(self, sid: str, message: RegisterViewer) -> bool:
        stream = self.registry.get(message.stream_id)
        if stream is None:
            self._emit("error", {"message": "Stream not found"}, to=sid)
            return False
        if not self.is_connected(stream.socket_id):
            self._emit("error", {"message": "Streamer not found"}, to=sid)
            return False
        if stream.socket_id == sid:
            self._emit("error", {"message": "Cannot view your own stream"}, to=sid)
            return False

        conn = self.connection(sid) or self.on_connect(sid)
        if conn.role == STREAMER:
            # a connection publishes or watches, never both
            self._drop_streamer(conn, reason="streamer-left")
        elif conn.role == VIEWER and conn.stream_id != stream.id:
            self.registry.remove_viewer(conn.stream_id)
        if conn.role != VIEWER or conn.stream_id != stream.id:
            self.registry.add_viewer(stream.id)
        conn.role, conn.stream_id = VIEWER, stream.id
        logger.info("Viewer %s connected to %s", sid, stream.id)
        self._emit(
            "registered", {"streamId": stream.id, "streamerSocketId": stream.socket_id}, to=sid
        )
        self.broadcast_streams()
        return True

    # -- forwarding -------------------------------------------------------

    def relay(self, from_sid: str, to_sid: str, event: str, payload: Dict[str, Any]) -> bool:
        """Forward ``payload`` verbatim; drop it (logged) if the target is gone."""
        if not self.is_connected(to_sid):
            logger.warning("Dropping %s from %s: %s is not connected", event, from_sid, to_sid)
            return False
        logger.debug("Forwarding %s from %s to %s", event, from_sid, to_sid)
        self._emit(event, payload, to=to_sid)
        return True

    def on_stats_update(self, sid: str, message: StatsUpdate) -> None:
        conn = self.connection(sid)
        if conn is not None and conn.role == STREAMER and conn.stream_id in self.registry:
            self.registry.update_stats(conn.stream_id, message.stats())
            self.broadcast_streams()
        self._emit("network-usage", self.registry.network_usage())

    # -- bandwidth test ---------------------------------------------------

    def on_probe_start(self, sid: str) -> None:
        self.probe.start(sid)

    def on_probe_upload(self, sid: str, size: int) -> None:
        self.probe.record_upload(sid, size)

    def on_probe_download_request(self, sid: str) -> None:
        chunk = self.probe.download_chunk(sid)
        self._emit("bandwidth-test-download-chunk", {"size": len(chunk), "chunk": chunk}, to=sid)

    def on_probe_complete(self, sid: str, message: BandwidthTestComplete) -> None:
        try:
            result = self.probe.complete(
                sid, message.upload_bytes, message.download_bytes, message.duration
            )
        except ProbeTimeout:
            result = self.probe.fallback(sid)

        with self.engine.lock:
            previous = self._allocations()
            self.engine.set_capacity(result.total)
            allocations = self.engine.reallocate_all()

        self._emit("bandwidth-test-result", result.to_payload(), to=sid)
        self._push_reallocations(previous, allocations, "capacity-updated")
        self.broadcast_status()

    # -- lifecycle --------------------------------------------------------

    def reset(self) -> None:
        with self._lock:
            self._connections.clear()
        self.registry.clear()
        self.engine.reset()
