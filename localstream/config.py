import json
import os
import socket

PACKAGE_DIR = os.path.dirname(__file__)


def _env(name, default, cast=str):
    raw = os.environ.get(f"LOCALSTREAM_{name}")
    if raw is None or raw == "":
        return default
    return cast(raw)


def _json_list(raw):
    value = json.loads(raw)
    if not isinstance(value, list):
        raise ValueError("expected a JSON list")
    return value


class Config:
    HOST = _env("HOST", "0.0.0.0")
    PORT = _env("PORT", 3000, int)
    SECRET_KEY = _env("SECRET_KEY", "change-me")
    CORS_ALLOWED_ORIGINS = _env("CORS_ALLOWED_ORIGINS", "*")
    # None: eventlet when importable, threading otherwise
    SOCKETIO_ASYNC_MODE = _env("SOCKETIO_ASYNC_MODE", None)
    # None: first non-loopback IPv4 address of this machine
    PUBLIC_HOST = _env("PUBLIC_HOST", None)
    PRESETS_FILE = _env("PRESETS_FILE", os.path.join(PACKAGE_DIR, "presets.json"))
    ICE_SERVERS = _env("ICE_SERVERS", [], _json_list)

    PROBE_DURATION_MS = _env("PROBE_DURATION_MS", 5000, int)
    PROBE_SAFETY_MS = _env("PROBE_SAFETY_MS", 1000, int)
    PROBE_CHUNK_SIZE = _env("PROBE_CHUNK_SIZE", 64 * 1024, int)
    FALLBACK_CAPACITY_MBPS = _env("FALLBACK_CAPACITY_MBPS", 10.0, float)

    LOG_LEVEL = _env("LOG_LEVEL", "INFO")


def local_ip():
    """Best guess of the LAN address phones should use to reach us."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # no packet is sent for a UDP connect
        s.connect(("10.255.255.255", 1))
        return s.getsockname()[0]
    except OSError:
        return "localhost"
    finally:
        s.close()


def server_url(config):
    host = config.get("PUBLIC_HOST") or local_ip()
    return f"http://{host}:{config['PORT']}"


def load_video_config(path):
    """Read the `video` section (tier presets + default preset) of a presets file."""
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    video = data.get("video", {})
    video.setdefault("presets", {})
    return video
