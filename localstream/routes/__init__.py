from .api import api_bp
from .health import health_bp


def register_blueprints(app):
    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_blueprint(health_bp)
