"""
Session Model

One Session exists per connected device. It is created by
``SessionEngine.connect`` and handed back to the caller, who passes it into
every further operation. Only the engine mutates it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any

from tacho_link.protocols.channels import ChannelPair
from tacho_link.transport.base import CharacteristicInfo


class SessionState(Enum):
    """Session state machine states."""

    IDLE = auto()
    AUTHENTICATING = auto()
    AUTHENTICATED = auto()
    DOWNLOADING = auto()
    CLOSING = auto()


class TransferBuffer:
    """Append-only byte accumulator for one download."""

    PREVIEW_BYTES = 100

    def __init__(self) -> None:
        self._data = bytearray()
        self._packets = 0

    def append(self, packet: bytes) -> int:
        """Append a packet and return the new total size."""
        self._data.extend(packet)
        self._packets += 1
        return len(self._data)

    def reset(self) -> None:
        self._data.clear()
        self._packets = 0

    def snapshot(self) -> bytes:
        return bytes(self._data)

    @property
    def packets(self) -> int:
        return self._packets

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)

    def hex_preview(self) -> str:
        return " ".join(f"{b:02x}" for b in self._data[: self.PREVIEW_BYTES])


@dataclass
class Session:
    """State of one device connection."""

    address: str
    channels: ChannelPair | None = None
    characteristics: list[CharacteristicInfo] = field(default_factory=list)
    state: SessionState = SessionState.IDLE
    authenticated: bool = False
    buffer: TransferBuffer = field(default_factory=TransferBuffer)
    active_operation: str | None = None
    connected_at: datetime = field(default_factory=datetime.now)
    closed: bool = False

    @property
    def busy(self) -> bool:
        return self.active_operation is not None

    @property
    def downloading(self) -> bool:
        return self.state in (SessionState.DOWNLOADING, SessionState.CLOSING)

    def describe(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "state": self.state.name,
            "authenticated": self.authenticated,
            "write": self.channels.write.uuid if self.channels else None,
            "notify": (
                self.channels.notify.uuid
                if self.channels and self.channels.notify
                else None
            ),
            "active_operation": self.active_operation,
            "closed": self.closed,
        }
