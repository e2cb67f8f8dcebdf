from flask import jsonify


class APIError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class LocalStreamError(Exception):
    """Base class for errors reported back to a single client."""

    message = "LocalStream error"

    def __init__(self, message: str = None):
        super().__init__(message or self.message)
        self.message = message or self.message

    def to_payload(self):
        return {"message": self.message}


class UnknownTier(LocalStreamError):
    def __init__(self, tier_id: str):
        super().__init__(f"Unknown quality tier '{tier_id}'")
        self.tier_id = tier_id


class InsufficientBandwidth(LocalStreamError):
    def __init__(self, required_mbps: float, available_mbps: float):
        super().__init__(
            f"Insufficient bandwidth: {required_mbps:.1f} Mbps required, "
            f"{available_mbps:.1f} Mbps available"
        )
        self.required_mbps = required_mbps
        self.available_mbps = available_mbps

    def to_payload(self):
        return {
            "required": self.required_mbps,
            "available": self.available_mbps,
            "message": self.message,
        }


class ProbeTimeout(LocalStreamError):
    message = "Bandwidth test did not produce a measurement"


class StaleTarget(LocalStreamError):
    message = "Target bitrate is zero or undefined"


class MessageError(LocalStreamError):
    message = "Malformed signaling message"


def register_error_handlers(app):
    @app.errorhandler(APIError)
    def handle_api_error(err):
        response = jsonify({"status": "error", "message": err.message})
        response.status_code = err.status_code
        return response

    @app.errorhandler(404)
    def handle_404(err):
        response = jsonify({"status": "error", "message": "Not found"})
        response.status_code = 404
        return response

    @app.errorhandler(Exception)
    def handle_exception(err):
        app.logger.exception("Unhandled error")
        response = jsonify({"status": "error", "message": str(err)})
        response.status_code = 500
        return response
