import functools
import logging

from flask import request
from flask_socketio import SocketIO, emit

from .errors import LocalStreamError
from .messages import parse_message
from .services.relay import SignalingRelay

logger = logging.getLogger(__name__)


def register_socketio_events(socketio: SocketIO, relay: SignalingRelay):
    def on_message(event):
        """Parse the payload of ``event`` and report domain errors to the sender."""

        def decorator(handler):
            @functools.wraps(handler)
            def wrapper(data=None, *args):
                try:
                    message = parse_message(event, data)
                    return handler(request.sid, message)
                except LocalStreamError as err:
                    logger.warning("%s from %s refused: %s", event, request.sid, err.message)
                    emit("error", err.to_payload())

            return socketio.on(event)(wrapper)

        return decorator

    @socketio.on("connect")
    def on_connect(auth=None):
        relay.on_connect(request.sid)
        emit("streams-updated", relay.registry.to_list())
        emit("bandwidth-status", relay.engine.status())

    @socketio.on("disconnect")
    def on_disconnect(*args):
        relay.on_disconnect(request.sid)

    @on_message("register-streamer")
    def on_register_streamer(sid, message):
        relay.on_admission_request(sid, message)

    @on_message("register-viewer")
    def on_register_viewer(sid, message):
        relay.on_register_viewer(sid, message)

    @on_message("offer")
    def on_offer(sid, message):
        relay.relay(sid, message.to, "offer", message.forward(sid))

    @on_message("answer")
    def on_answer(sid, message):
        relay.relay(sid, message.to, "answer", message.forward(sid))

    @on_message("ice-candidate")
    def on_ice_candidate(sid, message):
        relay.relay(sid, message.to, "ice-candidate", message.forward(sid))

    @on_message("stats-update")
    def on_stats_update(sid, message):
        relay.on_stats_update(sid, message)

    @on_message("bandwidth-test-start")
    def on_bandwidth_test_start(sid, message):
        relay.on_probe_start(sid)

    @on_message("bandwidth-test-upload")
    def on_bandwidth_test_upload(sid, message):
        relay.on_probe_upload(sid, message.size)

    @on_message("bandwidth-test-download-request")
    def on_bandwidth_test_download_request(sid, message):
        relay.on_probe_download_request(sid)

    @on_message("bandwidth-test-complete")
    def on_bandwidth_test_complete(sid, message):
        relay.on_probe_complete(sid, message)
