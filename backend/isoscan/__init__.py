# isoscan/__init__.py
"""
App factory for the isolated scan-job engine.

    - Settings from ISOSCAN_* / SQLALCHEMY_DATABASE_URI (isoscan.config)
    - Production-appropriate logging levels
    - Flask-Migrate manages schema; db.create_all() only for throwaway
      SQLite databases (tests, local substrate)
    - Engine (delivery, dispatcher, watcher, collector, sweep) wired once
      and stored on app.extensions["isoscan"]
    - Background loops guarded by ISOSCAN_SCHEDULER_ENABLED

Tests pass settings / backend / sink / registry explicitly.
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from .config import Settings
from .errors import InternalError, RequestRejected, ScanEngineError
from .extensions import db, init_extensions
from . import models  # noqa: F401  (registers tables with the metadata)

error_logger = logging.getLogger("isoscan.errors")


# Third-party loggers and the level they are held at.
_LIBRARY_LEVELS = {
    "werkzeug": logging.INFO,
    "urllib3": logging.WARNING,
    "kubernetes": logging.WARNING,
    "apscheduler": logging.WARNING,
}

# Codes for the HTTP errors Flask raises before a route runs.
_HTTP_CODES = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    413: "PAYLOAD_TOO_LARGE",
}


def _configure_logging(app: Flask, production: bool) -> None:
    level = logging.INFO if production else logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S" if production else "%H:%M:%S",
    )
    app.logger.setLevel(level)
    for name, lib_level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(lib_level)


def _register_error_handlers(app: Flask) -> None:
    # Every error leaves as ScanEngineError.to_dict(); tracebacks stay in the log.

    @app.errorhandler(ScanEngineError)
    def engine_error(e: ScanEngineError):
        if e.http_status >= 500:
            error_logger.warning(f"{e.code}: {e.message}")
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(HTTPException)
    def http_error(e: HTTPException):
        status = e.code or 500
        if status >= 500:
            error_logger.error(f"HTTP {status}: {e.description}")
            return engine_error(InternalError())
        code = _HTTP_CODES.get(status, f"HTTP_{status}")
        return engine_error(RequestRejected(status, code, e.description or e.name))

    @app.errorhandler(Exception)
    def unhandled(e: Exception):
        error_logger.exception(f"Unhandled {type(e).__name__}: {e}")
        return engine_error(InternalError())


def create_app(
    settings: Optional[Settings] = None,
    backend=None,
    sink=None,
    registry=None,
) -> Flask:
    app = Flask(__name__)
    settings = settings or Settings.from_env()

    _configure_logging(app, settings.production)

    # ── Database ─────────────────────────────────────────────────────
    app.config["SQLALCHEMY_DATABASE_URI"] = settings.database_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    if settings.database_uri.startswith("sqlite"):
        # Watcher threads and request threads share one SQLite file.
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "connect_args": {"timeout": 30, "check_same_thread": False},
        }
    # The raw request may carry JSON escaping overhead on top of the
    # source payload; the engine enforces the exact limit itself.
    app.config["MAX_CONTENT_LENGTH"] = settings.max_payload_bytes * 2 + 64 * 1024

    init_extensions(app)

    # ── Engine ───────────────────────────────────────────────────────
    from .engine import build_engine
    from .scanners import default_registry
    from .sinks import build_sink
    from .substrate import build_backend

    engine = build_engine(
        app,
        settings=settings,
        registry=registry or default_registry(),
        backend=backend or build_backend(settings),
        sink=sink or build_sink(settings),
    )
    app.extensions["isoscan"] = engine

    # ── Blueprints ───────────────────────────────────────────────────
    from .scans import scanners_bp, scans_bp

    app.register_blueprint(scans_bp)
    app.register_blueprint(scanners_bp)

    _register_error_handlers(app)

    # Health check
    @app.get("/health")
    def health():
        return jsonify(status="up and running", substrate=engine.backend.name), 200

    # ── Schema Management ────────────────────────────────────────────
    # Flask-Migrate (Alembic) manages the schema: `flask db upgrade`.
    # In-memory / file SQLite outside production gets create_all() so the
    # local substrate and tests run without a migration step.
    if settings.database_uri.startswith("sqlite") and not settings.production:
        with app.app_context():
            db.create_all()

    # ── Background Scheduler ─────────────────────────────────────────
    if settings.scheduler_enabled:
        from .scheduler import init_scheduler
        init_scheduler(app)
    else:
        logging.getLogger(__name__).info(
            "Scheduler disabled for this worker (ISOSCAN_SCHEDULER_ENABLED != true)"
        )

    return app
