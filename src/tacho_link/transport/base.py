"""
Base Transport Interface

Defines the abstract interface for BLE-style characteristic transports and
the notification stream handed to protocol code.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from tacho_link.core.app_logging import get_logger, log_protocol_exchange

logger = get_logger(__name__)

# Characteristic capability flags as reported by discovery
PROP_READ = "read"
PROP_WRITE = "write"
PROP_WRITE_NO_RESPONSE = "write-without-response"
PROP_NOTIFY = "notify"
PROP_INDICATE = "indicate"

NotifyCallback = Callable[[bytes], None]


@dataclass(eq=False)
class TransportError(Exception):
    """Transport-level error."""

    message: str
    code: str
    recoverable: bool = True

    def __str__(self) -> str:
        return f"TransportError[{self.code}]: {self.message}"


@dataclass(frozen=True)
class CharacteristicInfo:
    """A discovered characteristic and the service it belongs to."""

    service_uuid: str
    uuid: str
    properties: frozenset[str] = frozenset()
    handle: Any = field(default=None, compare=False, repr=False)

    @property
    def can_write(self) -> bool:
        return PROP_WRITE in self.properties or PROP_WRITE_NO_RESPONSE in self.properties

    @property
    def can_notify(self) -> bool:
        return PROP_NOTIFY in self.properties or PROP_INDICATE in self.properties

    def matches(self, uuid: str) -> bool:
        """Case-insensitive UUID match (short UUIDs match as substrings)."""
        return uuid.lower() in self.uuid.lower()


class NotificationStream:
    """
    Single-consumer stream of notified packets.

    Packets are queued in arrival order. The queue is bounded; when the
    consumer falls behind by more than ``max_pending`` packets the stream
    fails with ``NOTIFY_OVERFLOW`` instead of dropping data.
    """

    def __init__(self, characteristic: CharacteristicInfo, max_pending: int = 1024) -> None:
        self.characteristic = characteristic
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=max_pending)
        self._error: TransportError | None = None
        self._closed = False
        self._consumed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def push(self, data: bytes | bytearray) -> None:
        """Deliver a packet from the transport (never blocks)."""
        if self._closed or self._error is not None:
            return
        packet = bytes(data)
        log_protocol_exchange("RX", packet, self.characteristic.uuid)
        try:
            self._queue.put_nowait(packet)
        except asyncio.QueueFull:
            self._error = TransportError(
                message=f"Notification queue overflow on {self.characteristic.uuid}",
                code="NOTIFY_OVERFLOW",
                recoverable=False,
            )
            logger.error(str(self._error))

    async def get(self, timeout: float | None = None) -> bytes | None:
        """
        Wait for the next packet.

        Returns:
            The packet, or None if ``timeout`` elapsed first
        """
        if self._error is not None:
            raise self._error
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list[bytes]:
        """Remove and return every packet currently queued."""
        packets = []
        while not self._queue.empty():
            packets.append(self._queue.get_nowait())
        return packets

    async def collect(self, window: float) -> list[bytes]:
        """Gather every packet that arrives within ``window`` seconds."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + window
        packets: list[bytes] = []
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            packet = await self.get(timeout=remaining)
            if packet is None:
                break
            packets.append(packet)
        return packets

    def close(self) -> None:
        self._closed = True

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("NotificationStream supports a single consumer")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        while not self._closed:
            packet = await self.get()
            if packet is not None:
                yield packet


class NotificationSubscription:
    """
    Scoped notification subscription.

    Entering enables notifications and attaches a fresh stream; leaving
    disables notifications and detaches the stream exactly once, whether
    the body finished, timed out or raised.
    """

    def __init__(self, transport: "BaseTransport", characteristic: CharacteristicInfo) -> None:
        self._transport = transport
        self._characteristic = characteristic
        self._stream: NotificationStream | None = None

    async def __aenter__(self) -> NotificationStream:
        key = self._characteristic.uuid.lower()
        if key in self._transport._subscriptions:
            raise TransportError(
                message=f"Characteristic {self._characteristic.uuid} already has an active subscription",
                code="SUBSCRIPTION_ACTIVE",
            )

        stream = NotificationStream(self._characteristic, self._transport.max_pending)
        self._transport._subscriptions[key] = stream
        try:
            await self._transport.start_notify(self._characteristic, stream.push)
            await self._transport.set_notify(self._characteristic, True)
        except BaseException:
            del self._transport._subscriptions[key]
            raise

        self._stream = stream
        logger.debug(f"Subscribed to notifications on {self._characteristic.uuid}")
        return stream

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        stream.close()
        key = self._characteristic.uuid.lower()
        try:
            await self._transport.set_notify(self._characteristic, False)
        except TransportError as e:
            logger.warning(f"Disabling notifications failed: {e}")
        finally:
            try:
                await self._transport.stop_notify(self._characteristic)
            finally:
                self._transport._subscriptions.pop(key, None)
                logger.debug(f"Subscription on {self._characteristic.uuid} cancelled")


class BaseTransport(ABC):
    """
    Abstract base class for transport implementations.

    All transports must implement these methods for consistent
    behavior across BLE and mock implementations.
    """

    def __init__(self, max_pending: int = 1024) -> None:
        self.max_pending = max_pending
        self._subscriptions: dict[str, NotificationStream] = {}

    @abstractmethod
    async def connect(self, address: str, timeout: float = 15.0) -> None:
        """
        Connect to a device.

        Args:
            address: Device address (MAC or platform identifier)
            timeout: Connection timeout in seconds

        Raises:
            TransportError: If the connection cannot be established
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the device."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the transport is connected."""

    @abstractmethod
    async def discover_characteristics(self) -> list[CharacteristicInfo]:
        """
        Discover all characteristics of the connected device.

        Returns:
            Characteristics in the order reported by discovery
        """

    @abstractmethod
    async def write(
        self,
        characteristic: CharacteristicInfo,
        data: bytes,
        confirm_delivery: bool = True,
    ) -> bool:
        """
        Write bytes to a characteristic.

        Args:
            characteristic: Target characteristic
            data: Payload
            confirm_delivery: Use write-with-response

        Returns:
            True if written successfully
        """

    @abstractmethod
    async def set_notify(self, characteristic: CharacteristicInfo, enabled: bool) -> None:
        """Enable or disable notifications on a characteristic."""

    @abstractmethod
    async def start_notify(
        self, characteristic: CharacteristicInfo, callback: NotifyCallback
    ) -> None:
        """Attach a packet callback to a characteristic."""

    @abstractmethod
    async def stop_notify(self, characteristic: CharacteristicInfo) -> None:
        """Detach the packet callback from a characteristic."""

    def subscribe(self, characteristic: CharacteristicInfo) -> NotificationSubscription:
        """
        Open a scoped subscription to a characteristic.

        Usage::

            async with transport.subscribe(char) as stream:
                packet = await stream.get(timeout=3.0)
        """
        return NotificationSubscription(self, characteristic)

    def has_subscription(self, characteristic: CharacteristicInfo) -> bool:
        return characteristic.uuid.lower() in self._subscriptions

    def get_info(self) -> dict[str, Any]:
        """Get transport information (optional implementation)."""
        return {"type": self.__class__.__name__}
