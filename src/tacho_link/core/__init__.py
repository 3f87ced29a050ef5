"""
Tacho Link Core Package

Contains the session engine, session model, configuration, errors
and logging. The engine and session live in their own modules
(``tacho_link.core.engine``, ``tacho_link.core.session``) because they
depend on the protocol package.
"""

from tacho_link.core.app_logging import get_logger, log_audit_event, setup_logging
from tacho_link.core.config import AppConfig, load_config, save_config
from tacho_link.core.errors import (
    AlreadyInProgress,
    ChannelResolutionFailed,
    SessionClosed,
    SessionError,
    TransportWriteFailed,
)

__all__ = [
    "get_logger",
    "log_audit_event",
    "setup_logging",
    "AppConfig",
    "load_config",
    "save_config",
    "AlreadyInProgress",
    "ChannelResolutionFailed",
    "SessionClosed",
    "SessionError",
    "TransportWriteFailed",
]
