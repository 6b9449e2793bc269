"""Configuration helpers for the reimbursement service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

TRUE_VALUES = {"1", "true", "t", "yes", "y", "on"}


@dataclass(slots=True)
class AppConfig:
    """Settings loaded from environment variables."""

    database_url: str
    uploads_dir: Path
    secret_key: str
    max_content_length: int
    log_level: str = "INFO"
    allow_status_override: bool = True


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUE_VALUES


def load_config() -> AppConfig:
    """Create an :class:`AppConfig` instance from environment variables.

    Values from a ``.env`` file in the working directory are loaded first
    without overriding variables that are already set.
    """

    load_dotenv(override=False)
    uploads_dir = Path(os.getenv("REIMBURSEMENT_UPLOADS", "instance/uploads"))
    uploads_dir.mkdir(parents=True, exist_ok=True)
    database = os.getenv(
        "REIMBURSEMENT_DATABASE",
        "sqlite:///" + str(Path("instance/reimbursements.db")),
    )
    max_content_length = int(
        os.getenv("REIMBURSEMENT_MAX_CONTENT_LENGTH", str(10 * 1024 * 1024))
    )
    secret_key = os.getenv("REIMBURSEMENT_SECRET_KEY", "development")
    return AppConfig(
        database_url=database,
        uploads_dir=uploads_dir,
        secret_key=secret_key,
        max_content_length=max_content_length,
        log_level=os.getenv("REIMBURSEMENT_LOG_LEVEL", "INFO").upper(),
        allow_status_override=_env_flag("REIMBURSEMENT_ALLOW_STATUS_OVERRIDE", True),
    )
