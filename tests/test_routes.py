import base64


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "ok"
    assert body["streams"] == 0
    assert body["uptime"] >= 0


def test_config_exposes_presets_and_ice_servers(client):
    body = client.get("/api/config").get_json()

    assert body["webrtc"] == {"iceServers": []}
    assert body["video"]["presets"]["1080p30"]["bitrateMax"] == 8_000_000
    assert body["serverURL"] == "http://192.168.1.10:3000"


def test_streams_empty(client):
    assert client.get("/api/streams").get_json() == []


def test_bandwidth_status(client, app):
    app.extensions["localstream"]["engine"].set_capacity(12.5)

    body = client.get("/api/bandwidth").get_json()

    assert body["totalBandwidth"] == 12.5
    assert body["availableBandwidth"] == 12.5
    assert body["activeStreamers"] == 0


def test_mobile_qr(client):
    body = client.get("/api/qr/mobile").get_json()

    assert body["url"] == "http://192.168.1.10:3000/mobile"
    prefix = "data:image/svg+xml;base64,"
    assert body["qr"].startswith(prefix)
    assert b"<svg" in base64.b64decode(body["qr"][len(prefix):])


def test_unknown_route_is_json_404(client):
    response = client.get("/api/nope")

    assert response.status_code == 404
    assert response.get_json() == {"status": "error", "message": "Not found"}
