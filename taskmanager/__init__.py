from __future__ import annotations

from flask import Flask, g, request
from werkzeug.exceptions import HTTPException

from .config import Config
from .db import init_db
from .logging import configure_logging, get_logger
from .auth.errors import AuthError
from .auth.routes import auth_bp
from .auth.tokens import RevocationSweeper, TokenService

log = get_logger(__name__)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AuthError)
    def handle_auth_error(exc: AuthError):
        return exc.to_dict(), exc.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return {"ok": False, "error": exc.description, "code": exc.name.lower().replace(" ", "_")}, exc.code
        account = g.get("account")
        log.exception(
            "unhandled_error",
            operation=request.endpoint,
            method=request.method,
            account_id=account.id if account is not None else None,
        )
        return {"ok": False, "error": "internal server error", "code": "internal_error"}, 500


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(app.config["LOG_LEVEL"], app.config["LOG_FORMAT"])
    init_db(app)

    if app.config.get("EMAIL_BACKEND") == "memory":
        app.extensions["email_outbox"] = []

    token_service = TokenService.from_config(app.config)
    app.extensions["token_service"] = token_service
    sweeper = RevocationSweeper(token_service, app.config["REVOCATION_SWEEP_INTERVAL_SECONDS"])
    app.extensions["revocation_sweeper"] = sweeper
    if app.config.get("REVOCATION_SWEEPER_ENABLED", False):
        sweeper.start()

    register_error_handlers(app)
    app.register_blueprint(auth_bp, url_prefix="/auth")

    @app.get("/health")
    def health_check():
        return {"ok": True}

    return app
