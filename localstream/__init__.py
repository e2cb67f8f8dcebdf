import time

from flask import Flask
from flask_socketio import SocketIO

from .config import Config, load_video_config, server_url


def _async_mode(configured):
    if configured:
        return configured
    try:
        import eventlet  # noqa: F401
        return "eventlet"
    except Exception:  # pragma: no cover
        return "threading"


def create_app(config_object=Config, **overrides):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.config.update(overrides)
    app.config["STARTED_AT"] = time.monotonic()

    from .services.catalog import QualityTierCatalog
    from .services.allocation import AllocationEngine
    from .services.probe import ProbeService
    from .services.registry import StreamRegistry
    from .services.relay import SignalingRelay

    video = load_video_config(app.config["PRESETS_FILE"])
    catalog = QualityTierCatalog.from_presets(video)
    engine = AllocationEngine(catalog)
    engine.reset()

    async_mode = _async_mode(app.config["SOCKETIO_ASYNC_MODE"])
    sio = SocketIO(app, cors_allowed_origins=app.config["CORS_ALLOWED_ORIGINS"],
                   async_mode=async_mode)

    relay = SignalingRelay(
        engine,
        StreamRegistry(),
        ProbeService(
            duration_ms=app.config["PROBE_DURATION_MS"],
            safety_ms=app.config["PROBE_SAFETY_MS"],
            chunk_size=app.config["PROBE_CHUNK_SIZE"],
            fallback_mbps=app.config["FALLBACK_CAPACITY_MBPS"],
        ),
        emitter=sio,
        viewer_base_url=server_url(app.config),
    )
    app.extensions["localstream"] = {
        "presets": video,
        "catalog": catalog,
        "engine": engine,
        "relay": relay,
    }

    from .routes import register_blueprints
    from .errors import register_error_handlers
    from . import sockets

    register_blueprints(app)
    register_error_handlers(app)
    sockets.register_socketio_events(sio, relay)

    return app, sio
