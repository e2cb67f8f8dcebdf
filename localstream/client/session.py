"""A streaming client: one camera, any number of viewers.

Registers with the signaling server, answers each viewer's offer with its own
aiortc peer connection and keeps one :class:`BitrateController` per viewer
driven by that connection's stats and by the server's reallocations.
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Sequence

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from .controller import BitrateController, Phase, POLL_INTERVAL
from .probe import BandwidthTester
from .stats import bitrate_kbps, packet_loss, sample_from_report

logger = logging.getLogger(__name__)


def sender_bitrate_applier(pc):
    """Push a bitrate cap into the video encoders behind ``pc``'s senders.

    aiortc creates the encoder lazily on the first frame, so a cap applied
    before that is a no-op; the stats poll re-applies the current cap.
    """

    def apply(bitrate: int) -> None:
        for sender in pc.getSenders():
            track = sender.track
            if track is None or track.kind != "video":
                continue
            encoder = getattr(sender, "_RTCRtpSender__encoder", None)
            if encoder is not None and hasattr(encoder, "target_bitrate"):
                encoder.target_bitrate = bitrate

    return apply


class ViewerPeer:
    def __init__(self, viewer_id, pc, controller, applier):
        self.viewer_id = viewer_id
        self.pc = pc
        self.controller = controller
        self.applier = applier
        self.last_sample = None


class StreamerSession:
    def __init__(self, sio, name: str, quality: str, tracks: Sequence = (),
                 pc_factory=RTCPeerConnection, clock=time.monotonic,
                 sleep=asyncio.sleep):
        self.sio = sio
        self.name = name
        self.quality = quality
        self.tracks = list(tracks)
        self._pc_factory = pc_factory
        self._clock = clock
        self._sleep = sleep

        self.stream_id: Optional[str] = None
        self.viewer_url: Optional[str] = None
        self.allocated_bitrate = 0
        self.rejection: Optional[dict] = None
        self.registered = asyncio.Event()
        self.peers: Dict[str, ViewerPeer] = {}

        sio.on("registered", self._on_registered)
        sio.on("bandwidth-insufficient", self._on_insufficient)
        sio.on("bandwidth-reallocated", self._on_reallocated)
        sio.on("offer", self._on_offer)
        sio.on("ice-candidate", self._on_ice_candidate)
        sio.on("error", self._on_error)
        sio.on("disconnect", self._on_disconnect)

    async def start(self, stream_id=None, probe=True, resolution=None, frame_rate=None):
        """Optionally measure the link, then ask to be admitted."""
        if probe:
            await BandwidthTester(self.sio).run()
        payload = {"name": self.name, "quality": self.quality}
        if stream_id:
            payload["streamId"] = stream_id
        if resolution:
            payload["resolution"] = resolution
        if frame_rate:
            payload["frameRate"] = frame_rate
        self.registered.clear()
        self.rejection = None
        await self.sio.emit("register-streamer", payload)

    # -- server events ----------------------------------------------------

    async def _on_registered(self, data):
        self.stream_id = data.get("streamId")
        self.viewer_url = data.get("viewerURL")
        self.allocated_bitrate = data.get("allocatedBitrate") or 0
        logger.info("Registered as %s at %.2f Mbps, viewer URL %s",
                    self.stream_id, self.allocated_bitrate / 1e6, self.viewer_url)
        self.registered.set()

    async def _on_insufficient(self, data):
        self.rejection = data
        logger.warning("Admission refused: %s", data.get("message"))
        self.registered.set()

    async def _on_reallocated(self, data):
        new_bitrate = data.get("newBitrate") or 0
        logger.info("Server reallocation (%s): %.2f Mbps, %s active streamers",
                    data.get("reason"), new_bitrate / 1e6, data.get("activeStreamers"))
        self.allocated_bitrate = new_bitrate
        for peer in self.peers.values():
            if (peer.controller.phase is Phase.IDLE and new_bitrate > 0
                    and peer.pc.connectionState == "connected"):
                # connected before any allocation was known
                peer.controller.start(new_bitrate)
            else:
                peer.controller.set_target(new_bitrate)

    async def _on_error(self, data):
        logger.error("Server error: %s", (data or {}).get("message"))

    async def _on_disconnect(self, *args):
        logger.info("Disconnected from signaling server")
        await self.close_peers()

    # -- viewers ----------------------------------------------------------

    async def _on_offer(self, data):
        viewer_id = data["from"]
        await self._close_peer(viewer_id)

        pc = self._pc_factory()
        for track in self.tracks:
            pc.addTrack(track)
        applier = sender_bitrate_applier(pc)
        controller = BitrateController(
            applier, self.allocated_bitrate, clock=self._clock, sleep=self._sleep
        )
        peer = self.peers[viewer_id] = ViewerPeer(viewer_id, pc, controller, applier)

        @pc.on("connectionstatechange")
        async def on_state_change():
            state = pc.connectionState
            logger.info("Viewer %s connection state: %s", viewer_id, state)
            if state == "connected":
                self._start_control(peer)
            elif state in ("failed", "closed"):
                await self._close_peer(viewer_id)

        offer = data["offer"]
        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        await self.sio.emit("answer", {
            "to": viewer_id,
            "answer": {"sdp": pc.localDescription.sdp, "type": pc.localDescription.type},
        })

    def _start_control(self, peer: ViewerPeer) -> None:
        if self.allocated_bitrate > 0:
            peer.controller.start(self.allocated_bitrate)
        else:
            logger.warning("No allocation yet for viewer %s, holding bitrate", peer.viewer_id)
        peer.controller.start_polling(lambda: self._poll(peer), POLL_INTERVAL)

    async def _poll(self, peer: ViewerPeer) -> float:
        report = await peer.pc.getStats()
        sample = sample_from_report(report, self._clock())
        loss = packet_loss(peer.last_sample, sample)
        kbps = bitrate_kbps(peer.last_sample, sample)
        peer.last_sample = sample
        if peer.controller.state.current_cap:
            peer.applier(int(peer.controller.state.current_cap))
        await self.sio.emit("stats-update", {
            "role": "streamer",
            "bitrate": kbps,
            "packetLoss": loss,
            "viewers": len(self.peers),
        })
        return loss

    async def _on_ice_candidate(self, data):
        peer = self.peers.get(data.get("from"))
        candidate = data.get("candidate")
        if peer is None or not candidate:
            return
        sdp = candidate.get("candidate", "")
        if not sdp:
            return
        ice = candidate_from_sdp(sdp.split(":", 1)[1] if sdp.startswith("candidate:") else sdp)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        try:
            await peer.pc.addIceCandidate(ice)
        except Exception:
            logger.exception("Failed to add ICE candidate from %s", peer.viewer_id)

    # -- teardown ---------------------------------------------------------

    async def _close_peer(self, viewer_id) -> None:
        peer = self.peers.pop(viewer_id, None)
        if peer is None:
            return
        peer.controller.close()
        await peer.pc.close()

    async def close_peers(self) -> None:
        for viewer_id in list(self.peers):
            await self._close_peer(viewer_id)

    async def close(self) -> None:
        await self.close_peers()
        await self.sio.disconnect()
