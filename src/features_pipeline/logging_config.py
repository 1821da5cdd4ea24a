from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from features_pipeline.config import AppConfig

PACKAGE_LOGGER = "features_pipeline"
ENV_PREFIX = "FEATURES_PIPELINE_"
PROD_ENVS = {"prod", "production"}

LOG_FILENAME = "app.log"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_TEXT_FORMATS = {
    "console": "[%(asctime)s] [%(levelname)s] %(name)s - %(message)s",
    "file": "[%(asctime)s] [%(levelname)s] %(name)s (%(filename)s:%(lineno)d) - %(message)s",
}
_JSON_FORMATS = {
    "console": "%(asctime)s %(levelname)s %(name)s %(message)s",
    "file": "%(asctime)s %(levelname)s %(name)s %(filename)s %(lineno)d %(message)s",
}

_LOG_CONFIGURED = False


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _auto_configure() -> bool:
    return _env("CONFIGURE_LOGGING", "1").lower() not in {"0", "false", "no"}


def _supports_json_logging() -> bool:
    """Return True if a JSON formatter is available."""
    try:
        import pythonjsonlogger  # type: ignore[unused-import]  # noqa: F401
    except ImportError:
        return False
    return True


def _build_logging_config(env: str, log_dir: Path, level: str, fmt: str) -> dict[str, Any]:
    """dictConfig for a stdout console handler, plus a rotating file in prod.

    Handlers hang off the root logger; the package logger only sets the
    level and propagates.
    """
    formats = _JSON_FORMATS if fmt == "json" else _TEXT_FORMATS
    formatters: dict[str, Any] = {}
    for key, pattern in formats.items():
        formatters[key] = {"format": pattern}
        if fmt == "json":
            formatters[key]["class"] = "pythonjsonlogger.jsonlogger.JsonFormatter"

    handlers: dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "console",
            "stream": "ext://sys.stdout",
        },
    }
    if env in PROD_ENVS:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "file",
            "filename": str(log_dir / LOG_FILENAME),
            "maxBytes": LOG_FILE_MAX_BYTES,
            "backupCount": LOG_FILE_BACKUPS,
            "encoding": "utf-8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "handlers": handlers,
        "root": {"level": level, "handlers": list(handlers)},
        "loggers": {PACKAGE_LOGGER: {"level": level, "propagate": True}},
    }


def configure_logging(
    *,
    level: str | None = None,
    log_dir: Path | str | None = None,
    env: str | None = None,
    fmt: str | None = None,
    force: bool = False,
) -> None:
    """Configure process-wide logging once.

    Unset arguments come from FEATURES_PIPELINE_LOG_LEVEL, _LOG_DIR, _ENV
    and _LOG_FORMAT. A "json" format without python-json-logger installed
    falls back to text with a warning.
    """
    global _LOG_CONFIGURED

    if _LOG_CONFIGURED and not force:
        return

    effective_fmt = (fmt or _env("LOG_FORMAT", "text")).lower()
    json_unavailable = effective_fmt == "json" and not _supports_json_logging()
    if json_unavailable:
        effective_fmt = "text"

    config = _build_logging_config(
        env=(env or _env("ENV", "dev")).lower(),
        log_dir=Path(log_dir if log_dir is not None else _env("LOG_DIR", "logs")),
        level=(level or _env("LOG_LEVEL", "INFO")).upper(),
        fmt=effective_fmt,
    )
    logging.config.dictConfig(config)
    _LOG_CONFIGURED = True

    if json_unavailable:
        logging.getLogger(__name__).warning(
            "JSON logging requested but python-json-logger is not installed; "
            "falling back to text format."
        )


def configure_logging_from_app_config(
    app_config: AppConfig,
    *,
    fmt: str | None = None,
    force: bool = False,
) -> None:
    """Configure logging from the `env` and `log_level` of a loaded AppConfig.

    Prod log files go to `<paths.base_dir>/logs`.
    """
    configure_logging(
        level=app_config.log_level,
        log_dir=app_config.resolved_paths().base_dir / "logs",
        env=app_config.env,
        fmt=fmt,
        force=force,
    )


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger, configuring logging on first use.

    FEATURES_PIPELINE_CONFIGURE_LOGGING=0 leaves configuration to the host
    application.
    """
    if not _LOG_CONFIGURED and _auto_configure():
        configure_logging()
    return logging.getLogger(name)
