"""Structured logging with structlog.

Each orchestrator tick runs inside ``tick_context``, which binds a short
``tick`` id (plus mode and personality) into structlog's contextvars, so
the grant, decision, audit and submission events of one tick correlate.

Security: grant signatures, private keys and API keys are NEVER logged.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import structlog


_CONFIGURED = False
_INSTALLED_HANDLERS: list[logging.Handler] = []

_SENSITIVE_KEYS = frozenset({
    "private_key", "secret", "password", "api_key", "openai_api_key",
    "mnemonic", "signature", "auth_token", "agent_private_key",
})
_SENSITIVE_SUFFIXES = ("_private_key", "_api_key", "_secret", "_signature")
_REDACTED = "***REDACTED***"


def _is_sensitive(key: str) -> bool:
    k = key.lower()
    return k in _SENSITIVE_KEYS or k.endswith(_SENSITIVE_SUFFIXES)


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Mask sensitive fields, including ones nested one level in dicts."""
    for key, value in list(event_dict.items()):
        if _is_sensitive(key):
            event_dict[key] = _REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: (_REDACTED if _is_sensitive(str(k)) else v) for k, v in value.items()
            }
    return event_dict


def _handlers(level: int, log_file: str | None) -> list[logging.Handler]:
    out: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        out.append(logging.FileHandler(str(path)))
    for h in out:
        h.setLevel(level)
    return out


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Configure structlog and the stdlib root logger.

    The first call wins unless ``force`` is set, in which case handlers
    installed by an earlier call are replaced.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    for h in _INSTALLED_HANDLERS:
        root.removeHandler(h)
        h.close()
    _INSTALLED_HANDLERS.clear()

    root.setLevel(log_level)
    _INSTALLED_HANDLERS.extend(_handlers(log_level, log_file))

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _redact_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared)
    for h in _INSTALLED_HANDLERS:
        h.setFormatter(formatter)
        root.addHandler(h)

    _CONFIGURED = True


@contextmanager
def tick_context(tick_id: str | None = None, **fields: Any) -> Iterator[str]:
    """Bind a tick id (new unless given) and extra fields for the enclosed block."""
    tick_id = tick_id or uuid.uuid4().hex[:8]
    with structlog.contextvars.bound_contextvars(tick=tick_id, **fields):
        yield tick_id


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger, configuring from env on first use."""
    if not _CONFIGURED:
        configure_logging(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            fmt=os.environ.get("LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)
