from __future__ import annotations

import logging
from typing import Any, Dict

import structlog

_REDACTED_KEYS = {"authorization", "access_token", "credential", "client_secret", "api_key"}


def _redact_secrets(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in list(event_dict):
        if key.lower() in _REDACTED_KEYS:
            event_dict[key] = "***"
    return event_dict


def configure_logging(service_name: str, level: int = logging.INFO) -> None:
    logging.basicConfig(level=level)
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            _redact_secrets,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    logger = structlog.get_logger(service=service_name)
    logger.info("logging_configured")


def get_logger(service_name: str, **bindings: Any) -> structlog.BoundLogger:
    return structlog.get_logger(service=service_name, **bindings)
