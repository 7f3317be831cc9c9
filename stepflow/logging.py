from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Identifies the workflow run that emitted a log line
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)


def get_run_id() -> Optional[str]:
    """Get the id of the workflow run executing in the current context."""
    return run_id_var.get()


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set or generate the run id for the current task context."""
    rid = run_id or str(uuid.uuid4())
    run_id_var.set(rid)
    return rid


def _add_run_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add run_id to all log entries."""
    rid = get_run_id()
    if rid:
        event_dict["run_id"] = rid
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials that leak into step inputs or errors."""
    secret_keys = {"password", "secret", "token", "api_key", "apikey", "authorization"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(secret in lower_key for secret in secret_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_run_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger; entries carry the current run id."""
    return structlog.get_logger(name)


def log_run_summary(summary: dict, logger: Optional[Any] = None) -> None:
    """Log the per-step status of a finished run."""
    log = logger or get_logger("workflow")
    log.info("workflow_run_summary", **summary)
