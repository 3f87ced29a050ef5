"""
Application Configuration

Manages configuration loading, validation, and persistence.
Supports configuration files and runtime overrides.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from platformdirs import user_config_dir, user_data_dir

from tacho_link.core.app_logging import get_logger

logger = get_logger(__name__)

APP_NAME = "tacho_link"

UNVERIFIED_AUTH_POLICIES = ("pessimistic", "optimistic")


@dataclass
class ConnectionConfig:
    """Connection-related configuration."""

    preferred_address: str | None = None
    connect_timeout: float = 15.0
    scan_timeout: float = 10.0


@dataclass
class ProtocolConfig:
    """Session protocol timing and policy."""

    dialect: str = "digiblu"
    dialects_dir: str = ""
    auth_timeout: float = 3.0
    # Enforced completion wait; kept configurable because large
    # vehicle-unit downloads may need several minutes.
    download_timeout: float = 60.0
    command_delay: float = 0.5
    fire_and_forget_delay: float = 1.0
    unverified_auth_policy: str = "pessimistic"
    notify_queue_size: int = 1024

    def __post_init__(self) -> None:
        if self.unverified_auth_policy not in UNVERIFIED_AUTH_POLICIES:
            raise ValueError(
                f"unverified_auth_policy must be one of {UNVERIFIED_AUTH_POLICIES}, "
                f"got {self.unverified_auth_policy!r}"
            )


@dataclass
class ProbeConfig:
    """Diagnostic probe timing."""

    response_window: float = 2.0
    inter_command_delay: float = 0.5
    settle_delay: float = 0.5


@dataclass
class StorageConfig:
    """Artifact persistence configuration."""

    output_dir: str = ""


@dataclass
class LoggingConfig:
    """Logging-related configuration."""

    log_level: str = "INFO"
    log_dir: str = "./logs"
    log_raw_protocol: bool = False


@dataclass
class AppConfig:
    """Main application configuration."""

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Last device that completed a session, for quick reconnection
    last_known_address: str | None = None
    simulation_mode: bool = False

    def __post_init__(self) -> None:
        """Initialize default paths."""
        if not self.protocol.dialects_dir:
            config_dir = Path(user_config_dir(APP_NAME))
            self.protocol.dialects_dir = str(config_dir / "dialects")
        if not self.storage.output_dir:
            self.storage.output_dir = str(Path(user_data_dir(APP_NAME)) / "downloads")

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "last_known_address": self.last_known_address,
            "simulation_mode": self.simulation_mode,
            "connection": {
                "preferred_address": self.connection.preferred_address,
                "connect_timeout": self.connection.connect_timeout,
                "scan_timeout": self.connection.scan_timeout,
            },
            "protocol": {
                "dialect": self.protocol.dialect,
                "dialects_dir": self.protocol.dialects_dir,
                "auth_timeout": self.protocol.auth_timeout,
                "download_timeout": self.protocol.download_timeout,
                "command_delay": self.protocol.command_delay,
                "fire_and_forget_delay": self.protocol.fire_and_forget_delay,
                "unverified_auth_policy": self.protocol.unverified_auth_policy,
                "notify_queue_size": self.protocol.notify_queue_size,
            },
            "probe": {
                "response_window": self.probe.response_window,
                "inter_command_delay": self.probe.inter_command_delay,
                "settle_delay": self.probe.settle_delay,
            },
            "storage": {
                "output_dir": self.storage.output_dir,
            },
            "logging": {
                "log_level": self.logging.log_level,
                "log_dir": self.logging.log_dir,
                "log_raw_protocol": self.logging.log_raw_protocol,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppConfig":
        """Create configuration from dictionary."""
        config = cls()

        if "last_known_address" in data:
            config.last_known_address = data["last_known_address"]
        if "simulation_mode" in data:
            config.simulation_mode = bool(data["simulation_mode"])

        if "connection" in data:
            conn = data["connection"] or {}
            config.connection = ConnectionConfig(
                preferred_address=conn.get("preferred_address"),
                connect_timeout=conn.get("connect_timeout", 15.0),
                scan_timeout=conn.get("scan_timeout", 10.0),
            )

        if "protocol" in data:
            proto = data["protocol"] or {}
            config.protocol = ProtocolConfig(
                dialect=proto.get("dialect", "digiblu"),
                dialects_dir=proto.get("dialects_dir", config.protocol.dialects_dir),
                auth_timeout=proto.get("auth_timeout", 3.0),
                download_timeout=proto.get("download_timeout", 60.0),
                command_delay=proto.get("command_delay", 0.5),
                fire_and_forget_delay=proto.get("fire_and_forget_delay", 1.0),
                unverified_auth_policy=proto.get(
                    "unverified_auth_policy", "pessimistic"
                ),
                notify_queue_size=proto.get("notify_queue_size", 1024),
            )

        if "probe" in data:
            probe = data["probe"] or {}
            config.probe = ProbeConfig(
                response_window=probe.get("response_window", 2.0),
                inter_command_delay=probe.get("inter_command_delay", 0.5),
                settle_delay=probe.get("settle_delay", 0.5),
            )

        if "storage" in data:
            storage = data["storage"] or {}
            config.storage = StorageConfig(
                output_dir=storage.get("output_dir", config.storage.output_dir),
            )

        if "logging" in data:
            log = data["logging"] or {}
            config.logging = LoggingConfig(
                log_level=log.get("log_level", "INFO"),
                log_dir=log.get("log_dir", "./logs"),
                log_raw_protocol=log.get("log_raw_protocol", False),
            )

        return config


def get_config_path() -> Path:
    """Get the default configuration file path."""
    config_dir = Path(user_config_dir(APP_NAME))
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir / "config.yaml"


def load_config(path: Path | None = None) -> AppConfig:
    """
    Load configuration from file.

    Args:
        path: Path to configuration file (default: user config dir)

    Returns:
        Loaded configuration
    """
    config_path = path or get_config_path()

    if not config_path.exists():
        logger.info(f"No configuration file found at {config_path}, using defaults")
        return AppConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            if config_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)

        config = AppConfig.from_dict(data or {})
        logger.info(f"Configuration loaded from {config_path}")
        return config

    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Failed to load configuration: {e}")
        return AppConfig()


def save_config(config: AppConfig, path: Path | None = None) -> bool:
    """
    Save configuration to file.

    Args:
        config: Configuration to save
        path: Path to save to (default: user config dir)

    Returns:
        True if saved successfully
    """
    config_path = path or get_config_path()

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(config.to_dict(), f, default_flow_style=False)

        logger.info(f"Configuration saved to {config_path}")
        return True

    except OSError as e:
        logger.error(f"Failed to save configuration: {e}")
        return False
