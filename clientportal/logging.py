"""Structured logging for the portal: request ids, auth audit entries and redaction.

Every log entry is a structlog event. Audit entries emitted through
``log_auth_event`` carry ``audit=True``, a ``category`` and an ``outcome`` so
login and session decisions can be filtered out of the general stream.
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id used by every entry logged in this context."""
    cid = correlation_id or str(uuid.uuid4())
    request_id_var.set(cid)
    return cid


def _add_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = request_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _tag_audit(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Give audit entries a stable shape for log-based alerting."""
    if event_dict.get("audit"):
        event_dict.setdefault("category", "auth")
        event_dict.setdefault("outcome", "unknown")
    return event_dict


# values under these keys are never written, not even partially
_SECRET_MARKERS = ("password", "secret", "token", "authorization", "cookie")
# describe the decision, not the person; kept verbatim on audit entries
_AUDIT_FIELDS = frozenset({"event", "audit", "category", "outcome", "check", "reason"})


def mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def mask_identity(value: str) -> str:
    digits = "".join(ch for ch in value if ch.isdigit())
    return f"***{digits[-4:]}" if len(digits) > 4 else "***"


def _redact(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, e-mail addresses and business registration numbers."""
    for key, value in list(event_dict.items()):
        if key in _AUDIT_FIELDS or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SECRET_MARKERS):
            event_dict[key] = "[redacted]"
        elif "email" in lower_key or lower_key == "identifier":
            event_dict[key] = mask_email(value)
        elif lower_key.endswith("identity"):
            event_dict[key] = mask_identity(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog; the runtime calls this with the loaded settings."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_id,
        _tag_audit,
        _redact,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # module-level loggers must pick up the settings applied at startup
        cache_logger_on_first_use=False,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_auth_event(
    event: str,
    *,
    outcome: str,
    level: str = "info",
    logger: Optional[Any] = None,
    **fields: Any,
) -> None:
    """Emit one audit entry for an authentication or session outcome.

    Every entry carries ``audit=True`` and an ``outcome`` so failures of each
    kind can be filtered independently of the event name.
    """
    log = logger or get_logger("audit")
    getattr(log, level)(event, audit=True, outcome=outcome, **fields)
