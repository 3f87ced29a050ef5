"""
Structured Logging System

Provides JSONL structured logging for audit trails and protocol debugging.
Every session, authentication and download is logged with timestamps and
context so that reverse-engineering runs can be compared afterwards.
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

# Module-level logger cache
_loggers: dict[str, logging.Logger] = {}
_log_dir: Path | None = None
_session_id: str = datetime.now().strftime("%Y%m%d_%H%M%S")
_log_raw_protocol: bool = False

ROOT_LOGGER = "tacho_link"


class JSONLFormatter(logging.Formatter):
    """Formatter that outputs logs as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "session": _session_id,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add standard extra fields if present
        for key in [
            "audit_event",
            "audit_details",
            "direction",
            "label",
            "payload",
            "address",
            "verdict",
        ]:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data)


class ConsoleFormatter(logging.Formatter):
    """Colored console formatter for human-readable output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        return f"{color}[{timestamp}] {record.levelname:8}{self.RESET} {record.name}: {record.getMessage()}"


def setup_logging(
    log_dir: Path | None = None,
    debug: bool = False,
    log_raw_protocol: bool = False,
) -> None:
    """
    Initialize the logging system.

    Args:
        log_dir: Directory for log files (default: ./logs)
        debug: Enable debug-level logging
        log_raw_protocol: Log every TX/RX payload at INFO level
    """
    global _log_dir, _session_id, _log_raw_protocol

    _log_dir = log_dir or Path("./logs")
    _log_dir.mkdir(parents=True, exist_ok=True)
    _log_raw_protocol = log_raw_protocol

    # Generate session ID
    _session_id = datetime.now().strftime("%Y%m%d_%H%M%S")

    # Configure root logger
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)

    # Clear existing handlers
    root_logger.handlers.clear()

    # Console handler (human-readable)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    # File handler (JSONL structured)
    log_file = _log_dir / f"session_{_session_id}.jsonl"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(JSONLFormatter())
    root_logger.addHandler(file_handler)

    # Log startup
    root_logger.info(
        f"Logging initialized: session={_session_id}, log_file={log_file}"
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    if name not in _loggers:
        # Ensure name is under tacho_link namespace
        if not name.startswith(ROOT_LOGGER):
            name = f"{ROOT_LOGGER}.{name}"

        logger = logging.getLogger(name)
        _loggers[name] = logger

    return _loggers[name]


def get_session_id() -> str:
    """Get the current session ID."""
    return _session_id


def get_log_dir() -> Path:
    """Get the log directory."""
    return _log_dir or Path("./logs")


def hex_dump(data: bytes | bytearray) -> str:
    """Render bytes as space separated lowercase hex pairs."""
    return " ".join(f"{b:02x}" for b in data)


def log_audit_event(
    event_type: str,
    description: str,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Log an audit event for tracking device sessions.

    Args:
        event_type: Type of event (e.g., "authenticate", "download_saved")
        description: Human-readable description
        details: Additional details
    """
    logger = get_logger("audit")
    logger.info(
        f"AUDIT: {event_type} - {description}",
        extra={
            "audit_event": event_type,
            "audit_details": details or {},
        },
    )


def log_protocol_exchange(
    direction: str,
    data: bytes | bytearray,
    label: str = "",
) -> None:
    """
    Log a single frame sent to or received from the device.

    Args:
        direction: "TX" or "RX"
        data: Raw payload
        label: Command label or characteristic UUID
    """
    logger = get_logger("protocol")
    level = logging.INFO if _log_raw_protocol else logging.DEBUG
    if not logger.isEnabledFor(level):
        return

    text = ""
    if data and all(0x20 <= b < 0x7F for b in data):
        text = f' "{bytes(data).decode("ascii")}"'

    logger.log(
        level,
        f"{direction} {label} ({len(data)}): {hex_dump(data)}{text}",
        extra={
            "direction": direction,
            "label": label,
            "payload": bytes(data).hex(),
        },
    )
