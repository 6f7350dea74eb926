import logging
import re
import sys
import typing as t

import structlog

_SENSITIVE_KEYS = (
    "token",
    "access_token",
    "scan_token",
    "authorization",
    "api_key",
    "secret",
    "password",
    "cookie",
)

_EMAIL_RE = re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w+\b")


def scrub_secrets(
    logger: t.Any, method_name: str, event_dict: dict[str, t.Any]
) -> dict[str, t.Any]:
    """Redact credentials and stray email addresses from log events.

    Token previews (``*_preview``) are allowed through.
    """
    def _scrub(d: dict[str, t.Any]) -> dict[str, t.Any]:
        for key in list(d.keys()):
            lowered = key.lower()
            if lowered.endswith("_preview"):
                continue
            if any(s in lowered for s in _SENSITIVE_KEYS):
                d[key] = "[REDACTED]"
            elif isinstance(d[key], dict):
                d[key] = _scrub(d[key])
            elif isinstance(d[key], str) and "email" not in lowered:
                d[key] = _EMAIL_RE.sub("[EMAIL]", d[key])
        return d

    return _scrub(event_dict)


def configure_logging(level: str = "INFO", json: bool = True) -> None:
    renderer: t.Any
    if json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            scrub_secrets,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
