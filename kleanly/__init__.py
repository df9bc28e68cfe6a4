# kleanly/__init__.py
from __future__ import annotations

import io
import logging
import os as _os
import sys
from logging.handlers import RotatingFileHandler

import click
from flask import Flask, abort, jsonify, request
from werkzeug.exceptions import HTTPException

# Shared extensions (singletons) live in kleanly/extensions.py
from kleanly.extensions import db, limiter, migrate

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _mask_uri(uri: str) -> str:
    """Hide password in logs."""
    if "@" in uri and "://" in uri:
        head, tail = uri.split("://", 1)
        creds, rest = tail.split("@", 1)
        if ":" in creds:
            user, _pwd = creds.split(":", 1)
            return f"{head}://{user}:***@{rest}"
    return uri


def _configure_logging(app: Flask) -> None:
    """stderr + rotating file, on app.logger and the kleanly package logger."""
    formatter = logging.Formatter(_LOG_FORMAT)
    handlers = []

    stream = sys.stderr
    reconfigure = getattr(stream, "reconfigure", None)
    if reconfigure is not None and not app.config.get("TESTING"):
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except (ValueError, io.UnsupportedOperation) as e:
            app.logger.warning(f"stderr left with its own encoding: {e}")
    stderr_handler = logging.StreamHandler(stream)
    stderr_handler.setLevel(logging.INFO)
    stderr_handler.setFormatter(formatter)
    handlers.append(stderr_handler)

    if not app.config.get("TESTING"):
        try:
            log_path = app.config.get("APP_ERROR_LOG") or "kleanly_error.log"
            log_dir = _os.path.dirname(log_path)
            if log_dir:
                _os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            app.logger.warning(f"File logging disabled: {e}")

    for logger in (app.logger, logging.getLogger("kleanly")):
        logger.handlers.clear()
        for handler in handlers:
            logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False


def create_app(config_overrides=None, stripe_gateway=None):
    # (Optional) .env, loaded before Config reads the environment
    from dotenv import load_dotenv
    load_dotenv()

    from kleanly.config import Config

    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(app)

    # ---- DB / Extensions init ----------------------------------------------
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    from kleanly.monitoring import init_sentry
    init_sentry(app)

    # ---- Load models early -------------------------------------------------
    from kleanly import models, models_billing, models_geo  # noqa: F401

    # ---- Billing provider ----------------------------------------------------
    from kleanly.services.stripe_service import StripeGateway
    app.extensions["stripe_gateway"] = stripe_gateway or StripeGateway.from_config(app.config)

    app.logger.info(f"Logger initialized. DB: {_mask_uri(app.config['SQLALCHEMY_DATABASE_URI'])}")

    # ---- Register blueprints -----------------------------------------------
    from kleanly.billing import billing_bp
    from kleanly.sponsored import sponsored_bp

    app.register_blueprint(sponsored_bp)
    app.register_blueprint(billing_bp)

    _register_error_handlers(app)
    _register_cron(app)
    _register_cli(app)

    @app.route("/__health__")
    def __health__():
        return jsonify({"ok": True, "app": app.config.get("APP_NAME")})

    return app


def _register_error_handlers(app: Flask) -> None:
    from kleanly.errors import SponsorshipError
    from kleanly.monitoring import capture_exception

    @app.errorhandler(SponsorshipError)
    def _sponsorship_error(err: SponsorshipError):
        if err.status >= 500:
            app.logger.error(f"{request.path} -> {err.status} {err.code}: {err.message}")
        else:
            app.logger.info(f"{request.path} -> {err.status} {err.code}")
        return jsonify(err.to_dict()), err.status

    @app.errorhandler(404)
    def _not_found(err):
        return jsonify({"ok": False, "code": "not_found", "error": "Not found"}), 404

    @app.errorhandler(Exception)
    def _unhandled(err):
        if isinstance(err, HTTPException):
            return jsonify({"ok": False, "code": err.name.lower().replace(" ", "_"), "error": err.description}), err.code
        db.session.rollback()
        app.logger.exception(f"Unhandled error on {request.method} {request.path}")
        capture_exception(err, endpoint=request.endpoint)
        return jsonify({"ok": False, "code": "internal_error", "error": "Internal server error"}), 500


def _register_cron(app: Flask) -> None:
    # ---- Cron runner (HTTP) -------------------------------------------------
    @app.route("/__cron__/run/<name>", methods=["GET", "POST"])
    @limiter.exempt
    def __cron_run(name):
        from kleanly.cron_tasks import TASKS, cron_lock

        task = TASKS.get(name)
        if task is None:
            return ("unknown task", 404)

        key = request.args.get("key") or request.headers.get("X-Cron-Key")
        if not key or key != app.config.get("CRON_SECRET", ""):
            return abort(403)

        with cron_lock(db, name) as acquired:
            if not acquired:
                app.logger.info("[CRON] %s skipped (lock busy)", name)
                return ("busy", 409)
            results = task(app, db)
        app.logger.info("[CRON] %s completed", name)
        return jsonify({"ok": True, "task": name, "results": results})


def _register_cli(app: Flask) -> None:
    @app.cli.command("init-db")
    def init_db():
        """Create all tables (idempotent)."""
        db.create_all()
        click.echo("Tables created.")

    @app.cli.command("cron-hourly")
    def cron_hourly():
        """Expire stale checkout locks and ended sponsorships."""
        from kleanly.cron_tasks import run_hourly
        results = run_hourly(app, db)
        click.echo(f"{results}")


__all__ = ["create_app", "db", "migrate", "limiter"]
