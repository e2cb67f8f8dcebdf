"""JSON endpoints used by the mobile, desktop and viewer pages."""
import base64

import qrcode
from qrcode.image.svg import SvgPathImage
from flask import Blueprint, current_app, jsonify

from ..config import server_url
from ..errors import APIError

api_bp = Blueprint("api", __name__)


def _state():
    return current_app.extensions["localstream"]


@api_bp.get("/config")
def get_config():
    return jsonify({
        "webrtc": {"iceServers": current_app.config["ICE_SERVERS"]},
        "video": _state()["presets"],
        "serverURL": server_url(current_app.config),
    })


@api_bp.get("/streams")
def list_streams():
    return jsonify(_state()["relay"].registry.to_list())


@api_bp.get("/bandwidth")
def bandwidth_status():
    return jsonify(_state()["engine"].status())


@api_bp.get("/qr/mobile")
def mobile_qr():
    url = f"{server_url(current_app.config)}/mobile"
    try:
        image = qrcode.make(url, image_factory=SvgPathImage, border=2)
        svg = image.to_string()
        if isinstance(svg, str):
            svg = svg.encode("utf-8")
    except Exception as err:
        raise APIError(f"QR generation failed: {err}", 500)
    encoded = base64.b64encode(svg).decode("ascii")
    return jsonify({"qr": f"data:image/svg+xml;base64,{encoded}", "url": url})
