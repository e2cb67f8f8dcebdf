import asyncio
from types import SimpleNamespace

from localstream.client.controller import Phase
from localstream.client.session import StreamerSession, sender_bitrate_applier


class FakeSio:
    def __init__(self):
        self.handlers = {}
        self.emitted = []

    def on(self, event, handler):
        self.handlers[event] = handler

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def disconnect(self):
        self.emitted.append(("disconnect", None))


class FakePeerConnection:
    def __init__(self):
        self.tracks = []
        self.listeners = {}
        self.remote = None
        self.localDescription = None
        self.connectionState = "new"
        self.closed = False

    def on(self, event):
        def register(handler):
            self.listeners[event] = handler
            return handler
        return register

    def addTrack(self, track):
        self.tracks.append(track)

    def getSenders(self):
        return []

    async def getStats(self):
        return {}

    async def setRemoteDescription(self, description):
        self.remote = description

    async def createAnswer(self):
        return SimpleNamespace(sdp="v=0 answer", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def close(self):
        self.closed = True


def make_session(clock, pcs):
    def factory():
        pc = FakePeerConnection()
        pcs.append(pc)
        return pc

    sio = FakeSio()
    session = StreamerSession(sio, "Desk", "720p30", tracks=["video-track"],
                              pc_factory=factory, clock=clock, sleep=clock.sleep)
    return sio, session


def test_start_without_probe_requests_admission(clock):
    async def scenario():
        sio, session = make_session(clock, [])
        await session.start(stream_id="cam-a", probe=False, resolution="1280x720")
        return sio

    sio = asyncio.run(scenario())

    assert sio.emitted == [("register-streamer", {
        "name": "Desk", "quality": "720p30", "streamId": "cam-a", "resolution": "1280x720",
    })]


def test_registration_and_rejection_are_recorded(clock):
    async def scenario():
        _, session = make_session(clock, [])
        await session._on_registered({"streamId": "cam-a", "viewerURL": "http://x/viewer?stream=cam-a",
                                      "allocatedBitrate": 3_000_000})
        registered = (session.stream_id, session.allocated_bitrate, session.registered.is_set())
        await session._on_insufficient({"required": 4, "available": 2.5, "message": "no"})
        return registered, session.rejection

    registered, rejection = asyncio.run(scenario())

    assert registered == ("cam-a", 3_000_000, True)
    assert rejection["available"] == 2.5


def test_offer_is_answered_and_tracks_attached(clock):
    pcs = []

    async def scenario():
        sio, session = make_session(clock, pcs)
        session.allocated_bitrate = 3_000_000
        await session._on_offer({"from": "viewer-1",
                                 "offer": {"sdp": "v=0 offer", "type": "offer"}})
        return sio, session

    sio, session = asyncio.run(scenario())

    [pc] = pcs
    assert pc.tracks == ["video-track"]
    assert pc.remote.type == "offer"
    assert sio.emitted == [("answer", {"to": "viewer-1",
                                       "answer": {"sdp": "v=0 answer", "type": "answer"}})]
    assert session.peers["viewer-1"].controller.state.target_bitrate == 3_000_000


def test_reallocation_retargets_every_viewer(clock):
    async def scenario():
        sio, session = make_session(clock, [])
        session.allocated_bitrate = 6_000_000
        for viewer in ("v1", "v2"):
            await session._on_offer({"from": viewer, "offer": {"sdp": "v=0", "type": "offer"}})
            session.peers[viewer].controller.start()
        await session._on_reallocated({"newBitrate": 4_000_000, "reason": "streamer-joined",
                                       "activeStreamers": 2})
        for peer in session.peers.values():
            await peer.controller.wait()
        caps = {v: p.controller.state.current_cap for v, p in session.peers.items()}
        await session.close()
        return session, caps

    session, caps = asyncio.run(scenario())

    assert caps == {"v1": 4_000_000, "v2": 4_000_000}
    assert session.allocated_bitrate == 4_000_000
    assert session.peers == {}


def test_closed_connection_drops_the_viewer(clock):
    pcs = []

    async def scenario():
        _, session = make_session(clock, pcs)
        session.allocated_bitrate = 3_000_000
        await session._on_offer({"from": "v1", "offer": {"sdp": "v=0", "type": "offer"}})
        controller = session.peers["v1"].controller
        pcs[0].connectionState = "failed"
        await pcs[0].listeners["connectionstatechange"]()
        return session, controller

    session, controller = asyncio.run(scenario())

    assert "v1" not in session.peers
    assert pcs[0].closed
    assert controller.phase is Phase.IDLE


def test_applier_only_touches_video_encoders():
    video_encoder = SimpleNamespace(target_bitrate=0)
    audio_encoder = SimpleNamespace(target_bitrate=0)
    video = SimpleNamespace(track=SimpleNamespace(kind="video"))
    audio = SimpleNamespace(track=SimpleNamespace(kind="audio"))
    setattr(video, "_RTCRtpSender__encoder", video_encoder)
    setattr(audio, "_RTCRtpSender__encoder", audio_encoder)
    pc = SimpleNamespace(getSenders=lambda: [video, audio])

    sender_bitrate_applier(pc)(2_500_000)

    assert video_encoder.target_bitrate == 2_500_000
    assert audio_encoder.target_bitrate == 0


def test_viewer_connected_before_allocation_starts_on_first_target(clock):
    pcs = []

    async def scenario():
        _, session = make_session(clock, pcs)
        await session._on_offer({"from": "v1", "offer": {"sdp": "v=0", "type": "offer"}})
        controller = session.peers["v1"].controller
        pcs[0].connectionState = "connected"
        await pcs[0].listeners["connectionstatechange"]()
        idle = controller.phase
        await session._on_reallocated({"newBitrate": 2_000_000, "reason": "capacity-updated",
                                       "activeStreamers": 1})
        await controller.wait()
        state = (idle, controller.phase, controller.state.current_cap)
        await session.close()
        return state

    idle, phase, cap = asyncio.run(scenario())

    assert idle is Phase.IDLE
    assert phase is Phase.STEADY
    assert cap == 2_000_000
