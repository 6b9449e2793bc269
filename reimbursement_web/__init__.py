"""Reimbursement request Flask application factory."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import click
from flask import Flask, current_app, g, jsonify
from werkzeug.exceptions import HTTPException

from packages.reimbursement_common import (
    AuthorizationError,
    InvalidTransitionError,
    NotFound,
    ReimbursementError,
    StorageUnavailable,
    ValidationError,
)

from .config import AppConfig, load_config
from .database import create_db_engine, init_schema
from .events import EventBus
from .policies import login_manager
from .reporting import AggregationReporter
from .repositories import ReimbursementRepository
from .services import ReimbursementService
from .storage import ReceiptStorage
from .workflow import ApprovalStateMachine

EXTENSION_KEY = "reimbursements"

ERROR_STATUS = {
    ValidationError: 400,
    AuthorizationError: 403,
    NotFound: 404,
    InvalidTransitionError: 409,
    StorageUnavailable: 503,
}


def create_app(config: AppConfig | None = None) -> Flask:
    """Build and configure the reimbursement Flask application.

    Args:
        config: Optional :class:`AppConfig` override. When ``None`` the helper
            loads configuration via :func:`load_config`, which reads the
            ``REIMBURSEMENT_*`` environment variables.

    Returns:
        Flask: Application with the schema created, the SQLAlchemy engine on
        ``app.config['DB_ENGINE']``, and the shared event bus and receipt
        storage on ``app.extensions['reimbursements']``.
    """

    app = Flask(__name__, instance_relative_config=True)
    app_config = config or load_config()
    Path(app.instance_path).mkdir(parents=True, exist_ok=True)
    app.config.update(
        SECRET_KEY=app_config.secret_key,
        UPLOAD_FOLDER=str(app_config.uploads_dir),
        MAX_CONTENT_LENGTH=app_config.max_content_length,
        ALLOW_STATUS_OVERRIDE=app_config.allow_status_override,
    )
    app.logger.setLevel(app_config.log_level)

    engine = create_db_engine(app_config.database_url)
    init_schema(engine)
    app.config["DB_ENGINE"] = engine
    app.extensions[EXTENSION_KEY] = {
        "events": EventBus(),
        "storage": ReceiptStorage(
            Path(app_config.uploads_dir), max_bytes=app_config.max_content_length
        ),
    }

    login_manager.init_app(app)
    _register_error_handlers(app)

    from .blueprints.reports import reports_bp
    from .blueprints.requests import requests_bp

    app.register_blueprint(requests_bp)
    app.register_blueprint(reports_bp)

    @app.teardown_appcontext
    def teardown(_: Any) -> None:
        g.pop("reimbursement_repo", None)

    @app.cli.command("init-db")
    def init_db_command() -> None:
        """Initialize the database tables."""

        init_schema(engine)
        click.echo("Database initialized.")

    return app


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ReimbursementError)
    def handle_reimbursement_error(exc: ReimbursementError):
        status = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
        )
        if status == 503:
            app.logger.error("Storage unavailable: %s", exc.message)
        elif status == 403:
            app.logger.info("Denied: %s", exc.message)
        response = jsonify(exc.to_dict())
        response.status_code = status
        if status == 503:
            response.headers["Retry-After"] = "5"
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        response = jsonify(
            error=(exc.name or "error").lower().replace(" ", "_"),
            message=exc.description,
        )
        response.status_code = exc.code or 500
        return response


def _extension(name: str) -> Any:
    return current_app.extensions[EXTENSION_KEY][name]


def get_events() -> EventBus:
    """Return the application's change-notification bus."""

    return _extension("events")


def get_storage() -> ReceiptStorage:
    """Return the receipt storage configured for the application.

    Returns:
        ReceiptStorage: Writer rooted at the configured uploads folder.

    External Dependencies:
        * Reads ``current_app.extensions["reimbursements"]``.
    """

    return _extension("storage")


def get_repository() -> ReimbursementRepository:
    """Return a cached repository bound to the active Flask request.

    The instance lives on :mod:`flask.g` so blueprints share it within a
    request; it publishes to the bus returned by :func:`get_events`.
    """

    if not hasattr(g, "reimbursement_repo"):
        engine = current_app.config["DB_ENGINE"]
        g.reimbursement_repo = ReimbursementRepository(engine, events=get_events())
    return g.reimbursement_repo


def get_service() -> ReimbursementService:
    """Build the submission service for the active request.

    Returns:
        ReimbursementService: Service over :func:`get_repository` and
        :func:`get_storage`.
    """

    return ReimbursementService(get_repository(), get_storage())


def get_state_machine() -> ApprovalStateMachine:
    """Build the approval state machine for the active request.

    Returns:
        ApprovalStateMachine: Workflow bound to the request's repository.

    External Dependencies:
        * Reads ``ALLOW_STATUS_OVERRIDE`` from :data:`flask.current_app.config`.
    """

    return ApprovalStateMachine(
        get_repository(),
        allow_override=current_app.config["ALLOW_STATUS_OVERRIDE"],
    )


def get_reporter() -> AggregationReporter:
    """Return the aggregation reporter used by the dashboard routes.

    Returns:
        AggregationReporter: Reporter reading totals through
        :func:`get_repository`.
    """

    return AggregationReporter(get_repository())


__all__ = [
    "AppConfig",
    "create_app",
    "get_events",
    "get_reporter",
    "get_repository",
    "get_service",
    "get_state_machine",
    "get_storage",
]
