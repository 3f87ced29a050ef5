"""
Protocol Dialects

A dialect bundles everything device-family specific: characteristic UUIDs,
the opcode table, the authentication response rules and the
end-of-transmission rules. Built-in dialects can be extended or overridden
by YAML/JSON dialect packs.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from tacho_link.core.app_logging import get_logger, hex_dump
from tacho_link.protocols.rules import BytePattern, PatternRule, parse_hex

logger = get_logger(__name__)

# Standard command names
INIT_SESSION = "init-session"
CLOSE_SESSION = "close-session"
SET_DATE_RANGE = "set-date-range"
DOWNLOAD_VEHICLE_UNIT = "download-vehicle-unit"
DOWNLOAD_DRIVER_CARD = "download-driver-card"
GET_STATUS = "get-status"

REQUIRED_COMMANDS = (
    INIT_SESSION,
    CLOSE_SESSION,
    SET_DATE_RANGE,
    DOWNLOAD_VEHICLE_UNIT,
    DOWNLOAD_DRIVER_CARD,
)

# Verdict names used as rule outcomes
ACCEPTED = "accepted"
REJECTED = "rejected"


class DialectError(Exception):
    """Raised for malformed dialect definitions."""


@dataclass(frozen=True)
class Command:
    """A single protocol command."""

    opcode: bytes
    label: str

    def __post_init__(self) -> None:
        if not self.opcode:
            raise ValueError("Command opcode cannot be empty")

    def __str__(self) -> str:
        return f"{self.label} [{hex_dump(self.opcode)}]"

    @classmethod
    def from_hex(cls, opcode: str | bytes | list[int], label: str | None = None) -> "Command":
        raw = parse_hex(opcode)
        return cls(opcode=raw, label=label or f"custom {hex_dump(raw)}")


@dataclass(frozen=True)
class DateRange:
    """Inclusive date range filter for downloads."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Date range end {self.end} is before start {self.start}")

    def encode(self) -> bytes:
        """Encode as YY MM DD HH MM SS for start then end."""
        return _encode_timestamp(self.start) + _encode_timestamp(self.end)


def _encode_timestamp(moment: datetime) -> bytes:
    return bytes(
        [
            moment.year % 100,
            moment.month,
            moment.day,
            moment.hour,
            moment.minute,
            moment.second,
        ]
    )


@dataclass(frozen=True)
class Dialect:
    """Definition of one device family's protocol."""

    name: str
    description: str = ""
    service_uuid: str | None = None
    write_uuid: str | None = None
    notify_uuid: str | None = None
    commands: dict[str, Command] = field(default_factory=dict)
    auth_rules: tuple[PatternRule, ...] = ()
    auth_default: str = REJECTED
    assume_success_on_timeout: bool = True
    eot_rules: tuple[PatternRule, ...] = ()
    probe_commands: tuple[Command, ...] = ()

    def command(self, name: str) -> Command:
        """Look up a command by name."""
        try:
            return self.commands[name]
        except KeyError:
            raise DialectError(f"Dialect '{self.name}' has no command '{name}'") from None

    def build_date_range_command(self, date_range: DateRange) -> Command:
        """Build the set-date-range command: opcode followed by 12 date bytes."""
        base = self.command(SET_DATE_RANGE)
        return Command(
            opcode=base.opcode + date_range.encode(),
            label=f"{base.label} {date_range.start:%Y-%m-%d}..{date_range.end:%Y-%m-%d}",
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "description": self.description,
            "service_uuid": self.service_uuid,
            "write_uuid": self.write_uuid,
            "notify_uuid": self.notify_uuid,
            "commands": {
                key: {"opcode": cmd.opcode.hex(" "), "label": cmd.label}
                for key, cmd in self.commands.items()
            },
            "auth_rules": [r.to_dict() for r in self.auth_rules],
            "auth_default": self.auth_default,
            "assume_success_on_timeout": self.assume_success_on_timeout,
            "eot_rules": [r.to_dict() for r in self.eot_rules],
            "probe_commands": [
                {"opcode": c.opcode.hex(" "), "label": c.label} for c in self.probe_commands
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: "Dialect | None" = None) -> "Dialect":
        """
        Create from dictionary.

        Keys absent from ``data`` are inherited from ``base`` when given,
        so a pack only needs to state what differs.
        """
        if "name" not in data:
            raise DialectError("Dialect definition requires a name")

        try:
            commands = dict(base.commands) if base else {}
            for key, entry in (data.get("commands") or {}).items():
                if isinstance(entry, dict):
                    commands[key] = Command(parse_hex(entry["opcode"]), entry.get("label", key))
                else:
                    commands[key] = Command(parse_hex(entry), key)

            dialect = base or cls(name=data["name"])
            updates: dict[str, Any] = {"name": data["name"], "commands": commands}
            for key in (
                "description",
                "service_uuid",
                "write_uuid",
                "notify_uuid",
                "auth_default",
                "assume_success_on_timeout",
            ):
                if key in data:
                    updates[key] = data[key]
            if "auth_rules" in data:
                updates["auth_rules"] = tuple(
                    PatternRule.from_dict(r) for r in data["auth_rules"]
                )
            if "eot_rules" in data:
                updates["eot_rules"] = tuple(
                    PatternRule.from_dict(r) for r in data["eot_rules"]
                )
            if "probe_commands" in data:
                updates["probe_commands"] = tuple(
                    Command(parse_hex(c["opcode"]), c.get("label", c["opcode"]))
                    for c in data["probe_commands"]
                )
        except (KeyError, TypeError, ValueError) as e:
            raise DialectError(f"Invalid dialect '{data['name']}': {e}") from e

        return replace(dialect, **updates)


def _digiblu_dialect() -> Dialect:
    """Nordic UART based Digiblu/Tachosys style adapter (reverse engineered)."""
    commands = {
        INIT_SESSION: Command(bytes([0x81, 0x00]), "Init session"),
        CLOSE_SESSION: Command(bytes([0x82, 0x00]), "Close session"),
        SET_DATE_RANGE: Command(bytes([0x83, 0x00]), "Set date range"),
        DOWNLOAD_VEHICLE_UNIT: Command(bytes([0x84, 0x00]), "Vehicle Unit (TGD)"),
        DOWNLOAD_DRIVER_CARD: Command(bytes([0x85, 0x00]), "Driver Card (DDD)"),
        GET_STATUS: Command(bytes([0x80, 0x01]), "Get status"),
        # Alternates seen on other manufacturers
        "init-alt-1": Command(bytes([0x01]), "Init simple"),
        "init-alt-2": Command(bytes([0xFF, 0x00]), "Init alternative"),
        "status-alt": Command(bytes([0x00]), "Status simple"),
    }

    auth_rules = (
        PatternRule("ok-ascii", BytePattern(exact=(b"OK",)), ACCEPTED),
        PatternRule("ack-byte", BytePattern(exact=(b"\x00", b"\x01")), ACCEPTED),
        PatternRule("credential-echo", BytePattern(min_length=5), ACCEPTED),
        PatternRule("double-zero", BytePattern(exact=(b"\x00\x00",)), REJECTED),
        PatternRule("generic-error", BytePattern(first_byte=0xFF), REJECTED),
        PatternRule("unknown-short", BytePattern(min_length=1, max_length=4), REJECTED),
    )

    eot_rules = (
        PatternRule("eot-marker", BytePattern(suffix=b"\x04")),
        PatternRule("double-zero-tail", BytePattern(suffix=b"\x00\x00")),
        PatternRule(
            "short-tail-after-volume",
            BytePattern(max_length=19),
            buffered_above=1000,
        ),
    )

    probe_commands = (
        Command(bytes([0x00]), "Status simple"),
        Command(bytes([0x01]), "Init 1"),
        Command(bytes([0x80, 0x01]), "Status GET"),
        Command(bytes([0x81, 0x00]), "Init session"),
        Command(bytes([0x84, 0x00]), "Download VU"),
        Command(bytes([0x85, 0x00]), "Download Driver"),
        Command(bytes([0xFF, 0x00]), "Init alternative"),
        Command(bytes([0xAA]), "Info"),
        Command(bytes([0x10]), "Ping"),
    )

    return Dialect(
        name="digiblu",
        description="Nordic UART tachograph adapter, guessed EU-style opcodes",
        service_uuid="6e400001-b5a3-f393-e0a9-e50e24dcca9e",
        write_uuid="6e400002-b5a3-f393-e0a9-e50e24dcca9e",
        notify_uuid="6e400003-b5a3-f393-e0a9-e50e24dcca9e",
        commands=commands,
        auth_rules=auth_rules,
        auth_default=REJECTED,
        assume_success_on_timeout=True,
        eot_rules=eot_rules,
        probe_commands=probe_commands,
    )


DIGIBLU = _digiblu_dialect()


class DialectRegistry:
    """
    Registry of protocol dialects.

    Provides the built-in Digiblu dialect and supports loading additional
    or overriding definitions from dialect packs.
    """

    def __init__(self, dialects_dir: str | Path | None = None) -> None:
        """
        Initialize dialect registry.

        Args:
            dialects_dir: Directory containing *.yaml / *.json dialect packs
        """
        self._dialects: dict[str, Dialect] = {DIGIBLU.name: DIGIBLU}
        self._dialects_dir = Path(dialects_dir) if dialects_dir else None

        if self._dialects_dir:
            self._load_packs()

    def _load_packs(self) -> None:
        if not self._dialects_dir or not self._dialects_dir.exists():
            return

        for file in sorted(self._dialects_dir.glob("*.yaml")):
            self.load_file(file)

        for file in sorted(self._dialects_dir.glob("*.json")):
            self.load_file(file)

    def load_file(self, file: Path) -> int:
        """
        Load dialects from a single pack file.

        A pack holds a ``dialects`` list; an entry with ``extends`` inherits
        every unspecified field from the named dialect.

        Returns:
            Number of dialects loaded
        """
        try:
            with open(file, "r", encoding="utf-8") as f:
                if file.suffix in (".yaml", ".yml"):
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Failed to read dialect pack {file}: {e}")
            return 0

        if not data or "dialects" not in data:
            return 0

        count = 0
        for entry in data["dialects"]:
            try:
                base = None
                if entry.get("extends"):
                    base = self.get(entry["extends"])
                self.add(Dialect.from_dict(entry, base=base))
                count += 1
            except DialectError as e:
                logger.warning(f"Invalid dialect in {file}: {e}")

        logger.info(f"Loaded {count} dialect(s) from pack: {file.name}")
        return count

    def get(self, name: str) -> Dialect:
        """Get a dialect by name."""
        try:
            return self._dialects[name]
        except KeyError:
            raise DialectError(
                f"Unknown dialect '{name}' (available: {', '.join(self.names())})"
            ) from None

    def names(self) -> list[str]:
        return sorted(self._dialects)

    def add(self, dialect: Dialect) -> None:
        """Add or replace a dialect after checking its opcode table."""
        missing = [c for c in REQUIRED_COMMANDS if c not in dialect.commands]
        if missing:
            raise DialectError(
                f"Dialect '{dialect.name}' is missing commands: {', '.join(missing)}"
            )
        self._dialects[dialect.name] = dialect

    def export_to_file(self, name: str, file: Path) -> bool:
        """Write a dialect as a pack file, as a starting point for edits."""
        try:
            data = {"version": "1.0", "dialects": [self.get(name).to_dict()]}
            with open(file, "w", encoding="utf-8") as f:
                if file.suffix in (".yaml", ".yml"):
                    yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
                else:
                    json.dump(data, f, indent=2)
            return True
        except OSError as e:
            logger.error(f"Failed to export dialect {name}: {e}")
            return False
