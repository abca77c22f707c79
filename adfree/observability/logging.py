"""
Structured logging for the entitlement service and client.

Every entry is a structlog event dict rendered as JSON (or console output in
development). Purchase evidence is bulky and sensitive: receipts, signed
transactions and bearer tokens are replaced by a short fingerprint before
rendering, so logs can correlate a receipt without storing it.
"""

import hashlib
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from adfree.config import Settings, settings

# Event keys whose values are purchase evidence or credentials
REDACTED_KEYS = frozenset(
    {
        "receipt_data",
        "receipt",
        "signed_payload",
        "signed_transaction",
        "authorization",
        "access_token",
    }
)


def _fingerprint(value: object) -> str:
    digest = hashlib.sha256(str(value).encode()).hexdigest()[:12]
    return f"<redacted sha256:{digest}>"


def redact_evidence(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in REDACTED_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = _fingerprint(event_dict[key])
    return event_dict


def _service_fields(config: Settings) -> Processor:
    def add_service(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", config.service_name)
        event_dict.setdefault("version", config.api_version)
        return event_dict

    return add_service


def setup_logging(config: Settings = settings) -> None:
    """Route structlog through stdlib logging on stdout at the configured level."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.log_level.upper(), logging.INFO),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _service_fields(config),
        redact_evidence,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
        if config.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields (notification uuid, transaction id, ...) to every log line in the block."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield
