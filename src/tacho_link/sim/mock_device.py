"""
Simulated Tachograph Adapter

Provides a deterministic BLE peer for simulation mode. It answers the
Digiblu dialect opcodes the way the reverse-engineered device is believed
to, and can be configured to reproduce the ambiguous behaviours the
session engine has to cope with (silent authentication, missing EOT, ...).
"""

from dataclasses import dataclass, field
from datetime import datetime

from tacho_link.core.app_logging import get_logger, hex_dump

logger = get_logger(__name__)

# Authentication reply modes
AUTH_OK = "ok"  # "OK" in ASCII
AUTH_ACK = "ack"  # single 0x01
AUTH_ECHO = "echo"  # credential echoed back
AUTH_SILENT = "silent"  # no reply at all
AUTH_REJECT = "reject"  # 0xFF

OP_STATUS = bytes([0x80, 0x01])
OP_INIT = bytes([0x81, 0x00])
OP_CLOSE = bytes([0x82, 0x00])
OP_DATE_RANGE = bytes([0x83, 0x00])
OP_DOWNLOAD_VU = bytes([0x84, 0x00])
OP_DOWNLOAD_CARD = bytes([0x85, 0x00])

EOT = 0x04


@dataclass
class SimulationConfig:
    """Behaviour of the simulated device."""

    password: str = "1234"
    auth_mode: str = AUTH_OK
    # Payload sizes (bytes)
    vehicle_unit_size: int = 1500
    driver_card_size: int = 600
    chunk_size: int = 20
    # Delay between notified packets (seconds)
    packet_delay: float = 0.001
    append_eot: bool = True
    # Reply to init-session, buffered by the host like any other packet
    init_ack: bytes | None = None
    status_reply: bytes = bytes([0x80, 0x00])
    # Probe replies keyed by opcode
    extra_replies: dict[bytes, list[bytes]] = field(default_factory=dict)


def build_payload(size: int, seed: int = 0) -> bytes:
    """Deterministic payload free of 0x00 and 0x04 bytes."""
    return bytes(0x10 + ((i * 7 + seed) % 0xE0) for i in range(size))


class SimulatedTachograph:
    """
    Simulated tachograph BLE adapter.

    Responds to writes with timed notification packets for MockTransport.
    """

    def __init__(self, config: SimulationConfig | None = None) -> None:
        self._config = config or SimulationConfig()
        self.authenticated = False
        self.session_open = False
        self.date_range: tuple[datetime, datetime] | None = None
        self.received: list[bytes] = []
        self.credentials: list[bytes] = []

    @property
    def config(self) -> SimulationConfig:
        return self._config

    def __str__(self) -> str:
        return f"SimulatedTachograph(auth_mode={self._config.auth_mode})"

    def payload_for(self, opcode: bytes) -> bytes:
        """Data the device streams for a download opcode."""
        if opcode == OP_DOWNLOAD_VU:
            return build_payload(self._config.vehicle_unit_size, seed=1)
        if opcode == OP_DOWNLOAD_CARD:
            return build_payload(self._config.driver_card_size, seed=2)
        return b""

    def process_write(self, characteristic_uuid: str, data: bytes) -> list[tuple[float, bytes]]:
        """
        Process a write and return the notifications to emit.

        Args:
            characteristic_uuid: Characteristic written to
            data: Payload

        Returns:
            (delay, packet) pairs in emission order
        """
        self.received.append(data)
        logger.debug(f"[SIM] Write {hex_dump(data)} on {characteristic_uuid}")

        if data in self._config.extra_replies:
            return self._timed(self._config.extra_replies[data])

        opcode = data[:2]
        if opcode == OP_INIT:
            self.session_open = True
            return self._timed([self._config.init_ack] if self._config.init_ack else [])
        if opcode == OP_CLOSE:
            self.session_open = False
            return []
        if opcode == OP_DATE_RANGE and len(data) == 14:
            self.date_range = (_decode_timestamp(data[2:8]), _decode_timestamp(data[8:14]))
            return []
        if opcode == OP_STATUS:
            return self._timed([self._config.status_reply])
        if opcode in (OP_DOWNLOAD_VU, OP_DOWNLOAD_CARD):
            return self._timed(self._stream(self.payload_for(opcode)))

        if not self.authenticated and len(data) >= 1 and data[0] < 0x80:
            return self._timed(self._authenticate(data))

        return []

    def _authenticate(self, credential: bytes) -> list[bytes]:
        self.credentials.append(credential)
        accepted = credential == self._config.password.encode("utf-8")
        mode = self._config.auth_mode

        if mode == AUTH_SILENT:
            self.authenticated = accepted
            return []
        if mode == AUTH_REJECT or not accepted:
            return [bytes([0xFF])]

        self.authenticated = True
        if mode == AUTH_ACK:
            return [bytes([0x01])]
        if mode == AUTH_ECHO:
            return [credential]
        return [b"OK"]

    def _stream(self, payload: bytes) -> list[bytes]:
        size = self._config.chunk_size
        packets = [payload[i : i + size] for i in range(0, len(payload), size)]
        if self._config.append_eot:
            if packets and len(packets[-1]) < size:
                packets[-1] = packets[-1] + bytes([EOT])
            else:
                packets.append(bytes([EOT]))
        return packets

    def _timed(self, packets: list[bytes]) -> list[tuple[float, bytes]]:
        return [(self._config.packet_delay, p) for p in packets]


def _decode_timestamp(raw: bytes) -> datetime:
    return datetime(2000 + raw[0], raw[1], raw[2], raw[3], raw[4], raw[5])
