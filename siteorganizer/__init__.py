import httpx
from flask import Flask
from werkzeug.exceptions import HTTPException

from siteorganizer.admin import admin_bp
from siteorganizer.api import api_bp
from siteorganizer.config import Config
from siteorganizer.jobs.scheduler import start_scheduler
from siteorganizer.services.common import error_response
from siteorganizer.services.postgrest import SupabaseClient, UpstreamError


def register_error_handlers(app):
    @app.errorhandler(UpstreamError)
    def upstream_error(exc):
        app.logger.warning("Upstream error %s: %s", exc.status_code, exc.body)
        return error_response(exc.message, 502, details=exc.body)

    @app.errorhandler(httpx.HTTPError)
    def upstream_unreachable(exc):
        app.logger.warning("Upstream request failed: %s", exc)
        return error_response("Upstream request failed", 502)

    @app.errorhandler(HTTPException)
    def http_error(exc):
        return error_response(exc.description or exc.name, exc.code or 500)

    @app.errorhandler(Exception)
    def unexpected_error(exc):
        app.logger.exception("Unhandled error: %s", exc)
        return error_response("Internal server error", 500)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    app.json.sort_keys = False

    app.extensions["supabase"] = SupabaseClient.from_config(app.config)

    app.register_blueprint(api_bp)
    app.register_blueprint(admin_bp)
    register_error_handlers(app)

    start_scheduler(app)
    return app
