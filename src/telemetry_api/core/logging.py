from __future__ import annotations

import ipaddress
import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict, Mapping

from loguru import logger
from opentelemetry import trace

# Attributes every stdlib LogRecord carries; anything else was passed via ``extra=``.
_STDLIB_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Chatty libraries whose INFO output drowns the ingestion logs.
_QUIET_LOGGERS = ("uvicorn.access", "apscheduler.executors.default", "httpx")

# Bound fields that carry a visitor's address.
CLIENT_IP_FIELDS = frozenset({"ip", "ip_address", "remote_addr", "client_ip"})


def mask_ip(value: Any) -> Any:
    """Zero the host part of a client address: /24 for IPv4, /48 for IPv6."""

    try:
        address = ipaddress.ip_address(str(value).strip())
    except ValueError:
        return value
    prefix = 24 if address.version == 4 else 48
    return str(ipaddress.ip_network(f"{address}/{prefix}", strict=False).network_address)


class InterceptHandler(logging.Handler):
    """Route stdlib logging (uvicorn, sqlalchemy, apscheduler) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = record.msg if isinstance(record.msg, str) else str(record.msg)

        extra = {key: value for key, value in record.__dict__.items() if key not in _STDLIB_RECORD_ATTRS}
        bound = logger.bind(**extra) if extra else logger
        bound.opt(depth=6, exception=record.exc_info).log(level, message.replace("{", "{{").replace("}", "}}"))


def build_log_payload(
    record: Mapping[str, Any],
    metadata: Mapping[str, Any],
    *,
    mask_client_ips: bool = True,
) -> Dict[str, Any]:
    """Flatten a loguru record into the JSON document written to stdout."""

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **metadata,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    for key, value in record["extra"].items():
        if mask_client_ips and key in CLIENT_IP_FIELDS and value:
            value = mask_ip(value)
        payload[key] = value

    if record["exception"] is not None:
        exc_type, exc_value, _ = record["exception"]
        payload["exception"] = {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value else None,
        }
    return payload


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str = "INFO",
    mask_client_ips: bool = True,
) -> None:
    """Install the JSON sink and bridge stdlib logging into it."""

    metadata = {"service": service_name, "environment": environment, "version": version}

    def _sink(message: "logger.Message") -> None:
        payload = build_log_payload(message.record, metadata, mask_client_ips=mask_client_ips)
        sys.stdout.write(json.dumps(payload, default=str) + "\n")

    logger.remove()
    logger.add(_sink, level=level.upper(), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["CLIENT_IP_FIELDS", "InterceptHandler", "build_log_payload", "configure_logging", "mask_ip"]
