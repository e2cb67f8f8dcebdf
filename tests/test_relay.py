import pytest

from localstream.errors import UnknownTier
from localstream.messages import (
    BandwidthTestComplete,
    RegisterStreamer,
    RegisterViewer,
    StatsUpdate,
)


def register(relay, sid, stream_id, quality="1080p30"):
    relay.on_connect(sid)
    return relay.on_admission_request(sid, RegisterStreamer(stream_id, quality=quality))


def test_rejected_streamer_is_told_why_and_not_registered(relay, emitter):
    relay.engine.set_capacity(3)

    result = register(relay, "sid-a", "cam-a")

    assert not result.admitted
    [(event, payload)] = emitter.to("sid-a")
    assert event == "bandwidth-insufficient"
    assert payload["required"] == pytest.approx(4.0)
    assert payload["available"] == pytest.approx(3.0)
    assert "cam-a" not in relay.registry
    assert relay.connection("sid-a").role is None


def test_admitted_streamer_gets_viewer_url_and_bitrate(relay, emitter):
    relay.engine.set_capacity(10)

    register(relay, "sid-a", "cam-a")

    [registered] = [d for e, d in emitter.to("sid-a") if e == "registered"]
    assert registered == {
        "streamId": "cam-a",
        "viewerURL": "http://192.168.1.10:3000/viewer?stream=cam-a",
        "allocatedBitrate": 8_000_000,
    }
    assert emitter.broadcasts("bandwidth-status")[-1]["activeStreamers"] == 1
    assert emitter.broadcasts("streams-updated")[-1][0]["id"] == "cam-a"


def test_join_and_leave_push_reallocations_to_existing_streamers(relay, emitter):
    relay.engine.set_capacity(10)
    register(relay, "sid-a", "cam-a")
    register(relay, "sid-b", "cam-b")

    assert emitter.to("sid-a", "bandwidth-reallocated") == [
        ("bandwidth-reallocated",
         {"newBitrate": 5_000_000, "reason": "streamer-joined", "activeStreamers": 2}),
    ]
    # the newcomer learns its bitrate from "registered" only
    assert emitter.to("sid-b", "bandwidth-reallocated") == []

    relay.on_disconnect("sid-b")

    assert emitter.to("sid-a", "bandwidth-reallocated")[-1][1] == {
        "newBitrate": 8_000_000, "reason": "streamer-left", "activeStreamers": 1,
    }
    assert "cam-b" not in relay.engine
    assert "cam-b" not in relay.registry


def test_unchanged_allocations_are_not_pushed(relay, emitter):
    relay.engine.set_capacity(40)
    register(relay, "sid-a", "cam-a")
    register(relay, "sid-b", "cam-b")

    assert emitter.to("sid-a", "bandwidth-reallocated") == []


def test_unknown_tier_propagates(relay):
    relay.engine.set_capacity(10)
    with pytest.raises(UnknownTier):
        register(relay, "sid-a", "cam-a", quality="8k")


def test_default_tier_used_when_quality_missing(relay):
    relay.engine.set_capacity(10)
    relay.on_connect("sid-a")
    relay.on_admission_request("sid-a", RegisterStreamer("cam-a"))

    assert relay.registry.get("cam-a").quality == "720p30"


def test_relay_forwards_only_to_connected_targets(relay, emitter):
    relay.on_connect("a")
    relay.on_connect("b")

    assert relay.relay("a", "b", "answer", {"from": "a", "answer": {"sdp": "x"}})
    assert emitter.to("b") == [("answer", {"from": "a", "answer": {"sdp": "x"}})]

    relay.on_disconnect("b")
    assert not relay.relay("a", "b", "answer", {"from": "a", "answer": {}})
    assert len(emitter.to("b")) == 1


def test_viewer_registration(relay, emitter):
    relay.engine.set_capacity(10)
    register(relay, "sid-a", "cam-a")
    relay.on_connect("sid-v")

    assert relay.on_register_viewer("sid-v", RegisterViewer("cam-a"))
    assert emitter.to("sid-v", "registered") == [
        ("registered", {"streamId": "cam-a", "streamerSocketId": "sid-a"}),
    ]
    assert relay.registry.get("cam-a").viewers == 1

    relay.on_disconnect("sid-v")
    assert relay.registry.get("cam-a").viewers == 0


def test_viewer_of_unknown_stream_gets_error(relay, emitter):
    relay.on_connect("sid-v")

    assert not relay.on_register_viewer("sid-v", RegisterViewer("nope"))
    assert emitter.to("sid-v") == [("error", {"message": "Stream not found"})]


def test_stats_update_only_touches_streamer_stats(relay, emitter):
    relay.engine.set_capacity(10)
    register(relay, "sid-a", "cam-a")
    relay.on_connect("sid-v")

    relay.on_stats_update("sid-a", StatsUpdate("streamer", 2500, {"fps": 30}))
    relay.on_stats_update("sid-v", StatsUpdate("viewer", 9999))

    stream = relay.registry.get("cam-a")
    assert stream.stats == {"fps": 30, "bitrate": 2500}
    assert emitter.broadcasts("network-usage")[-1] == {"totalBitrate": 2500.0, "streamCount": 1}


def test_probe_result_sets_capacity_and_reallocates(relay, emitter):
    relay.engine.set_capacity(5)
    register(relay, "sid-a", "cam-a")

    relay.on_probe_start("sid-p")
    relay.on_probe_complete("sid-p", BandwidthTestComplete(5_000_000, 0, 5000))

    assert relay.engine.capacity.total_mbps == pytest.approx(8.0)
    [(_, result)] = emitter.to("sid-p", "bandwidth-test-result")
    assert result["total"] == pytest.approx(8.0)
    assert emitter.to("sid-a", "bandwidth-reallocated")[-1][1]["reason"] == "capacity-updated"


def test_unusable_probe_falls_back_to_default_capacity(relay, emitter):
    relay.on_probe_complete("sid-p", BandwidthTestComplete(0, 0, 0))

    assert relay.engine.capacity.total_mbps == 6.0
    assert emitter.to("sid-p", "bandwidth-test-result")[0][1]["timedOut"]


def test_reset(relay):
    relay.engine.set_capacity(10)
    register(relay, "sid-a", "cam-a")

    relay.reset()

    assert len(relay.registry) == 0
    assert len(relay.engine) == 0
    assert not relay.is_connected("sid-a")


def test_bad_quality_on_reregistration_keeps_the_live_stream(relay):
    relay.engine.set_capacity(10)
    register(relay, "sid-a", "cam-a")

    with pytest.raises(UnknownTier):
        register(relay, "sid-a", "cam-a2", quality="bogus")

    assert "cam-a" in relay.engine
    assert "cam-a" in relay.registry
    assert relay.connection("sid-a").stream_id == "cam-a"


def test_streamer_turning_viewer_releases_its_allocation(relay, emitter):
    relay.engine.set_capacity(10)
    register(relay, "sid-a", "cam-a")
    register(relay, "sid-b", "cam-b")

    assert relay.on_register_viewer("sid-a", RegisterViewer("cam-b"))

    assert "cam-a" not in relay.engine
    assert "cam-a" not in relay.registry
    assert emitter.to("sid-b", "bandwidth-reallocated")[-1][1]["reason"] == "streamer-left"
    assert relay.registry.get("cam-b").viewers == 1

    relay.on_disconnect("sid-a")

    assert [s["id"] for s in relay.engine.status()["streamers"]] == ["cam-b"]
    assert relay.registry.get("cam-b").viewers == 0


def test_viewing_own_stream_is_refused(relay, emitter):
    relay.engine.set_capacity(10)
    register(relay, "sid-a", "cam-a")

    assert not relay.on_register_viewer("sid-a", RegisterViewer("cam-a"))

    assert emitter.to("sid-a", "error") == [("error", {"message": "Cannot view your own stream"})]
    assert "cam-a" in relay.engine


def test_viewer_switching_streams_moves_its_count(relay):
    relay.engine.set_capacity(10)
    register(relay, "sid-a", "cam-a")
    register(relay, "sid-b", "cam-b")
    relay.on_connect("sid-v")

    relay.on_register_viewer("sid-v", RegisterViewer("cam-a"))
    relay.on_register_viewer("sid-v", RegisterViewer("cam-a"))
    assert relay.registry.get("cam-a").viewers == 1

    relay.on_register_viewer("sid-v", RegisterViewer("cam-b"))
    assert relay.registry.get("cam-a").viewers == 0
    assert relay.registry.get("cam-b").viewers == 1

    relay.on_disconnect("sid-v")
    assert relay.registry.get("cam-b").viewers == 0


def test_viewer_turning_streamer_leaves_the_audience(relay):
    relay.engine.set_capacity(10)
    register(relay, "sid-a", "cam-a")
    relay.on_connect("sid-v")
    relay.on_register_viewer("sid-v", RegisterViewer("cam-a"))

    relay.on_admission_request("sid-v", RegisterStreamer("cam-v", quality="720p30"))

    assert relay.registry.get("cam-a").viewers == 0
    assert relay.connection("sid-v").role == "streamer"
