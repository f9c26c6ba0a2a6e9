"""
structlog configuration for the API process and the Celery workers.

Modules log through ``structlog.get_logger(__name__)`` with dotted event
names (``billing.payment.failed``). Request-scoped values such as the
correlation id are carried in structlog context variables.
"""

import logging
import sys
from typing import Any

import structlog

from subs.settings import Settings, get_settings

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("stripe", "httpx", "aiosqlite", "celery.worker.strategy")


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the stdlib root logger from settings."""
    settings = settings or get_settings()
    observability = settings.observability
    level = getattr(logging, observability.log_level.value)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database.echo else logging.WARNING
    )

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if observability.enable_correlation_ids:
        processors.insert(0, structlog.contextvars.merge_contextvars)

    if observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_context(**values: Any) -> None:
    """Attach values (correlation id, actor) to every log line of this request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**{k: v for k, v in values.items() if v is not None})


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def log_audit_event(
    action: str,
    category: str,
    actor: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    **kwargs: Any,
) -> None:
    """
    Write an audit line for an administrative action.

    Deletions and bulk actions are audited here because a deleted
    subscription takes its history rows with it.
    """
    structlog.get_logger("audit").info(
        action,
        audit_category=category,
        audit_actor=actor,
        audit_resource_type=resource_type,
        audit_resource_id=resource_id,
        **kwargs,
    )
