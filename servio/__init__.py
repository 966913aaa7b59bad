"""Servio marketplace backend."""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping

import click
from flask import Flask, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from .errors import ServioError
from .extensions import cors, db


def create_app(config_object=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    if isinstance(config_object, Mapping):
        app.config.from_object("servio.config.Config")
        app.config.from_mapping(config_object)
    elif config_object:
        app.config.from_object(config_object)
    else:
        app.config.from_object(os.environ.get("APP_SETTINGS", "servio.config.Config"))

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("servio").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)

    origins = [o.strip() for o in str(app.config.get("CORS_ORIGINS", "*")).split(",") if o.strip()]
    cors.init_app(
        app,
        origins=origins or ["*"],
        supports_credentials=True,
        allow_headers=["Content-Type", "Authorization"],
        methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    )

    register_routes(app)
    register_error_handlers(app)
    register_commands(app)

    return app


def register_routes(app: Flask) -> None:
    from .routes import bp
    from .routes_admin import bp_admin
    from .routes_bookings import bp_bookings

    app.register_blueprint(bp)
    app.register_blueprint(bp_bookings)
    app.register_blueprint(bp_admin)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ServioError)
    def handle_domain_error(exc: ServioError):
        db.session.rollback()
        if exc.status_code >= 500:
            app.logger.error("%s %s failed: %s", request.method, request.path, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"success": False, "error": exc.description or exc.name}), exc.code

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(exc: SQLAlchemyError):
        db.session.rollback()
        app.logger.exception("Database error on %s %s", request.method, request.path, exc_info=exc)
        return _internal_error(app, exc)

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        db.session.rollback()
        app.logger.exception(
            "Unhandled error on %s %s headers=%s",
            request.method,
            request.path,
            {key: value for key, value in request.headers.items() if key.lower() != "authorization"},
            exc_info=exc,
        )
        return _internal_error(app, exc)


def _internal_error(app: Flask, exc: Exception):
    body: dict[str, object] = {"success": False, "error": "Something went wrong!"}
    if app.config.get("DEBUG"):
        body["details"] = str(exc)
    return jsonify(body), 500


def register_commands(app: Flask) -> None:
    @app.cli.command("init-db")
    @click.option("--drop", is_flag=True, help="Drop all tables first.")
    def init_db_command(drop: bool) -> None:
        """Create database tables."""
        from . import models  # noqa: F401

        if drop:
            db.drop_all()
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("dispatch-notifications")
    @click.option("--limit", default=100, show_default=True, help="Maximum rows to attempt.")
    def dispatch_notifications_command(limit: int) -> None:
        """Retry pending notification emails."""
        from .notifications import dispatch_pending

        sent, unsent = dispatch_pending(limit)
        click.echo(f"Sent {sent} notification(s); {unsent} still pending.")
