"""
Mock Transport Implementation

Provides a simulated BLE transport for testing and demonstration.
Writes are routed to an attached simulated device whose replies are
delivered as notifications, deterministically and in order.
"""

import asyncio
from typing import Any, Protocol

from tacho_link.core.app_logging import get_logger, log_protocol_exchange
from tacho_link.transport.base import (
    PROP_NOTIFY,
    PROP_READ,
    PROP_WRITE,
    PROP_WRITE_NO_RESPONSE,
    BaseTransport,
    CharacteristicInfo,
    NotifyCallback,
    TransportError,
)

logger = get_logger(__name__)

NUS_SERVICE = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_WRITE = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
NUS_NOTIFY = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"


def nordic_uart_characteristics() -> list[CharacteristicInfo]:
    """Characteristic layout of a Nordic UART style device."""
    return [
        CharacteristicInfo(
            "00001800-0000-1000-8000-00805f9b34fb",
            "00002a00-0000-1000-8000-00805f9b34fb",
            frozenset({PROP_READ}),
        ),
        CharacteristicInfo(
            NUS_SERVICE, NUS_WRITE, frozenset({PROP_WRITE, PROP_WRITE_NO_RESPONSE})
        ),
        CharacteristicInfo(NUS_SERVICE, NUS_NOTIFY, frozenset({PROP_NOTIFY})),
    ]


class SimulatedPeer(Protocol):
    """Anything that can answer writes with timed notification packets."""

    def process_write(self, characteristic_uuid: str, data: bytes) -> list[tuple[float, bytes]]:
        ...


class MockTransport(BaseTransport):
    """
    Mock transport for simulation mode.

    Holds a fixed characteristic table and forwards every write to the
    attached peer. Replies are pushed to the notification callback only
    while notifications are enabled, as a real peripheral would.
    """

    def __init__(
        self,
        characteristics: list[CharacteristicInfo] | None = None,
        peer: SimulatedPeer | None = None,
        max_pending: int = 1024,
    ) -> None:
        super().__init__(max_pending=max_pending)
        self._characteristics = (
            characteristics if characteristics is not None else nordic_uart_characteristics()
        )
        self._peer = peer
        self._connected = False
        self._address: str | None = None
        self._callbacks: dict[str, NotifyCallback] = {}
        self._notifying: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self.writes: list[tuple[str, bytes, bool]] = []
        self.notify_toggles: list[tuple[str, bool]] = []
        self.fail_writes_on: set[bytes] = set()
        self.raise_on_write: Exception | None = None
        self.fail_connect = False

    def attach_peer(self, peer: SimulatedPeer) -> None:
        """Connect a simulated device for response generation."""
        self._peer = peer
        logger.info(f"[MOCK] Attached simulated peer: {peer}")

    async def connect(self, address: str, timeout: float = 15.0) -> None:
        if self.fail_connect:
            raise TransportError(
                message=f"Simulated connection failure to {address}",
                code="CONNECT_FAILED",
            )
        logger.info(f"[MOCK] Connecting to {address}")
        self._connected = True
        self._address = address

    async def disconnect(self) -> None:
        logger.info("[MOCK] Disconnecting")
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._connected = False
        self._address = None
        self._callbacks.clear()
        self._notifying.clear()

    def is_connected(self) -> bool:
        return self._connected

    async def discover_characteristics(self) -> list[CharacteristicInfo]:
        self._require_connected()
        return list(self._characteristics)

    async def write(
        self,
        characteristic: CharacteristicInfo,
        data: bytes,
        confirm_delivery: bool = True,
    ) -> bool:
        self._require_connected()
        if self.raise_on_write is not None:
            raise self.raise_on_write
        if not characteristic.can_write:
            logger.warning(f"[MOCK] {characteristic.uuid} does not support writes")
            return False

        payload = bytes(data)
        log_protocol_exchange("TX", payload, characteristic.uuid)
        self.writes.append((characteristic.uuid, payload, confirm_delivery))

        if payload in self.fail_writes_on:
            return False

        if self._peer is not None:
            replies = self._peer.process_write(characteristic.uuid, payload)
            if replies:
                task = asyncio.get_running_loop().create_task(self._deliver(replies))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        return True

    async def set_notify(self, characteristic: CharacteristicInfo, enabled: bool) -> None:
        self._require_connected()
        key = characteristic.uuid.lower()
        self.notify_toggles.append((key, enabled))
        if enabled:
            self._notifying.add(key)
        else:
            self._notifying.discard(key)

    async def start_notify(
        self, characteristic: CharacteristicInfo, callback: NotifyCallback
    ) -> None:
        self._require_connected()
        self._callbacks[characteristic.uuid.lower()] = callback

    async def stop_notify(self, characteristic: CharacteristicInfo) -> None:
        self._callbacks.pop(characteristic.uuid.lower(), None)

    def notify(self, packet: bytes, characteristic_uuid: str = NUS_NOTIFY) -> bool:
        """Push a packet as if the device had notified it."""
        key = characteristic_uuid.lower()
        callback = self._callbacks.get(key)
        if callback is None or key not in self._notifying:
            logger.debug(f"[MOCK] Dropped notification on {key} (not subscribed)")
            return False
        callback(packet)
        return True

    async def _deliver(self, replies: list[tuple[float, bytes]]) -> None:
        notify_uuid = self._notify_uuid()
        for delay, packet in replies:
            await asyncio.sleep(delay)
            if notify_uuid is not None:
                self.notify(packet, notify_uuid)

    def _notify_uuid(self) -> str | None:
        for char in self._characteristics:
            if char.can_notify:
                return char.uuid
        return None

    def _require_connected(self) -> None:
        if not self._connected:
            raise TransportError(message="Mock transport not connected", code="NOT_CONNECTED")

    def get_sent_payloads(self) -> list[bytes]:
        """Payloads written so far, in order (for testing)."""
        return [payload for _, payload, _ in self.writes]

    def get_info(self) -> dict[str, Any]:
        return {
            "type": "mock",
            "address": self._address,
            "connected": self._connected,
            "tx_count": len(self.writes),
            "characteristics": len(self._characteristics),
        }
