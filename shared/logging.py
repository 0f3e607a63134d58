"""
Shared logging configuration for the entitlement reconciliation engine.

Every engine component logs through ``get_logger("reconciliation.<component>")``.
An analysis run is wrapped in ``analysis_context()``; per-account work inside
it binds the account with ``bind_account()`` so each event carries both.
"""

import sys
import structlog
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Dict, Iterator, Optional

analysis_id_var: ContextVar[Optional[str]] = ContextVar('analysis_id', default=None)
account_var: ContextVar[Optional[str]] = ContextVar('account', default=None)


def configure_logging(service_name: str, log_level: str = "info", json_logs: bool = True) -> None:
    """Configure structured logging for the engine.

    ``json_logs=False`` switches to the human readable console renderer.
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_correlation_context,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    structlog.get_logger(service_name).debug("Logging configured", level=log_level, json_logs=json_logs)


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Split ``service.component`` logger names into two fields."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        service_name, component = logger_name.split(".", 1)
        event_dict["service"] = service_name
        event_dict["component"] = component

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the current analysis id and account; explicit fields win."""
    analysis_id = analysis_id_var.get()
    if analysis_id:
        event_dict.setdefault("analysis_id", analysis_id)

    account = account_var.get()
    if account:
        event_dict.setdefault("account", account)

    return event_dict


def set_analysis_context(analysis_id: Optional[str] = None, account: Optional[str] = None) -> str:
    """Start an analysis run in the logging context."""
    if analysis_id is None:
        analysis_id = str(uuid.uuid4())
    analysis_id_var.set(analysis_id)
    if account:
        account_var.set(account)
    return analysis_id


def clear_context():
    analysis_id_var.set(None)
    account_var.set(None)


def bind_account(account: Optional[str]) -> Token:
    """Bind the account being processed; pass the token to ``reset_account``."""
    return account_var.set(account)


def reset_account(token: Token):
    account_var.reset(token)


@contextmanager
def analysis_context(analysis_id: Optional[str] = None, account: Optional[str] = None) -> Iterator[str]:
    """Run a block as one analysis, restoring the previous context afterwards.

    Nested use keeps the outer analysis id.
    """
    analysis_token = analysis_id_var.set(analysis_id or analysis_id_var.get() or str(uuid.uuid4()))
    account_token = account_var.set(account or account_var.get())
    try:
        yield analysis_id_var.get()
    finally:
        account_var.reset(account_token)
        analysis_id_var.reset(analysis_token)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
