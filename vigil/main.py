"""
Main — logging setup and the ``python -m vigil.main`` entry point.

Every entry point (the daemon, the CLI) calls configure_logging() before
doing anything else so that message content and credentials are masked
in every log line, whatever the renderer.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Optional

import structlog

from vigil.config import LoggingConfig
from vigil.events import EventBus, LogRecordEvent


def _log_redact(text: str) -> str:
    """PII and secret redactor for log fields (always enabled)."""
    return _get_log_redactor().redact(text)


@functools.lru_cache(maxsize=1)
def _get_log_redactor():  # noqa: ANN202
    from vigil.privacy.redaction import PIIRedactor

    return PIIRedactor(enabled=True)


_SENSITIVE_KEYS = frozenset({"content", "text", "delta", "command", "prompt", "arguments", "output"})
_MAX_DISPLAY_LEN = 120


def _redact_sensitive_fields(logger, method_name, event_dict):
    """
    Structlog processor that masks message bodies and secrets.

    Known content fields are redacted and truncated; every other string
    field still goes through secret masking so a stray API key in an error
    message never reaches disk.
    """
    for key, val in list(event_dict.items()):
        if key == "event":
            continue
        if key in _SENSITIVE_KEYS:
            if not isinstance(val, str):
                val = str(val)
            val = _log_redact(val)
            if len(val) > _MAX_DISPLAY_LEN:
                val = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
            event_dict[key] = val
        elif isinstance(val, str) and val:
            event_dict[key] = _log_redact(val)
    return event_dict


# ---------------------------------------------------------------------------
# Event bus mirror
# ---------------------------------------------------------------------------

_mirror_bus: Optional[EventBus] = None
_MIRROR_LEVELS = frozenset({"info", "warning", "error", "critical"})


def attach_event_bus(bus: Optional[EventBus]) -> None:
    """Mirror log records onto *bus* as ``log.record`` events (None detaches)."""
    global _mirror_bus  # noqa: PLW0603
    _mirror_bus = bus


def _mirror_to_event_bus(logger, method_name, event_dict):
    bus = _mirror_bus
    if bus is None or not bus.is_running:
        return event_dict
    level = str(event_dict.get("level", method_name)).lower()
    event = str(event_dict.get("event", ""))
    # The bus logs about itself; mirroring those would feed back.
    if level not in _MIRROR_LEVELS or event.startswith("event_bus."):
        return event_dict
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return event_dict  # not on the loop thread
    fields: dict[str, Any] = {
        k: v if isinstance(v, (str, int, float, bool)) or v is None else str(v)
        for k, v in event_dict.items()
        if k not in ("event", "level", "exc_info", "timestamp")
    }
    bus.emit(LogRecordEvent(level=level, event=event, fields=fields))
    return event_dict


_logging_configured = False


def configure_logging(config: Optional[LoggingConfig] = None, *, force: bool = False) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; later calls are no-ops unless *force*.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured and not force:
        return
    _logging_configured = True

    config = config or LoggingConfig()
    level = getattr(logging, config.level, logging.INFO)
    logging.basicConfig(format="%(message)s", level=level, force=force)
    logging.getLogger("vigil").setLevel(level)
    # aiohttp and the SDKs are chatty below WARNING.
    for noisy in ("aiohttp.access", "httpx", "anthropic"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_sensitive_fields,
        _mirror_to_event_bus,
    ]
    if config.json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def main() -> None:
    from vigil.cli.app import cli

    cli()


if __name__ == "__main__":
    main()
