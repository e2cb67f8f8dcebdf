import time

from flask import Blueprint, current_app, jsonify

health_bp = Blueprint("health", __name__)


@health_bp.get("/health")
def health():
    relay = current_app.extensions["localstream"]["relay"]
    return jsonify({
        "status": "ok",
        "streams": len(relay.registry),
        "uptime": time.monotonic() - current_app.config["STARTED_AT"],
    })
