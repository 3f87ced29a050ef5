"""
BLE Transport Implementation

Adapter over bleak exposing a connected peripheral's characteristics
through the BaseTransport interface.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from tacho_link.core.app_logging import get_logger, log_protocol_exchange
from tacho_link.transport.base import (
    BaseTransport,
    CharacteristicInfo,
    NotifyCallback,
    TransportError,
)

logger = get_logger(__name__)


@dataclass
class DiscoveredDevice:
    """A device seen during a scan."""

    name: str
    address: str
    rssi: int | None = None

    def __str__(self) -> str:
        return f"{self.name or '(unknown)'} [{self.address}]"


async def scan_devices(timeout: float = 10.0, name_filter: str | None = None) -> list[DiscoveredDevice]:
    """
    Scan for advertising BLE devices.

    Args:
        timeout: Scan duration in seconds
        name_filter: Case-insensitive substring the device name must contain

    Returns:
        Devices sorted by signal strength (strongest first)
    """
    try:
        found = await BleakScanner.discover(timeout=timeout, return_adv=True)
    except BleakError as e:
        raise TransportError(message=f"Scan failed: {e}", code="SCAN_FAILED") from e

    devices: list[DiscoveredDevice] = []
    for device, adv in found.values():
        name = device.name or adv.local_name or ""
        if name_filter and name_filter.lower() not in name.lower():
            continue
        devices.append(DiscoveredDevice(name=name, address=device.address, rssi=adv.rssi))

    devices.sort(key=lambda d: d.rssi if d.rssi is not None else -999, reverse=True)
    logger.info(f"Discovered {len(devices)} BLE device(s)")
    return devices


class BleTransport(BaseTransport):
    """Transport backed by a bleak client."""

    def __init__(self, max_pending: int = 1024) -> None:
        super().__init__(max_pending=max_pending)
        self._client: BleakClient | None = None
        self._address: str | None = None
        self._callbacks: dict[str, NotifyCallback] = {}
        self._notifying: set[str] = set()

    async def connect(self, address: str, timeout: float = 15.0) -> None:
        logger.info(f"Connecting to {address}...")
        client = BleakClient(address, timeout=timeout)
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError) as e:
            raise TransportError(
                message=f"Failed to connect to {address}: {e}",
                code="CONNECT_FAILED",
            ) from e
        self._client = client
        self._address = address
        logger.info(f"Connected to {address}")

    async def disconnect(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.disconnect()
        except BleakError as e:
            logger.warning(f"Error disconnecting: {e}")
        finally:
            logger.info(f"Disconnected from {self._address}")
            self._client = None
            self._address = None
            self._callbacks.clear()
            self._notifying.clear()

    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def discover_characteristics(self) -> list[CharacteristicInfo]:
        client = self._require_client()
        characteristics: list[CharacteristicInfo] = []
        for service in client.services:
            for char in service.characteristics:
                characteristics.append(
                    CharacteristicInfo(
                        service_uuid=str(service.uuid),
                        uuid=str(char.uuid),
                        properties=frozenset(char.properties),
                        handle=char,
                    )
                )
                logger.debug(
                    f"  {service.uuid} / {char.uuid} [{', '.join(char.properties)}]"
                )
        logger.info(f"Discovered {len(characteristics)} characteristic(s)")
        return characteristics

    async def write(
        self,
        characteristic: CharacteristicInfo,
        data: bytes,
        confirm_delivery: bool = True,
    ) -> bool:
        client = self._require_client()
        if not characteristic.can_write:
            logger.error(f"Characteristic {characteristic.uuid} does not support writes")
            return False

        payload = bytes(data)
        try:
            await client.write_gatt_char(
                self._target(characteristic), payload, response=confirm_delivery
            )
        except BleakError as e:
            raise TransportError(
                message=f"Write to {characteristic.uuid} failed: {e}",
                code="WRITE_FAILED",
            ) from e

        log_protocol_exchange("TX", payload, characteristic.uuid)
        return True

    async def start_notify(
        self, characteristic: CharacteristicInfo, callback: NotifyCallback
    ) -> None:
        self._require_client()
        self._callbacks[characteristic.uuid.lower()] = callback

    async def set_notify(self, characteristic: CharacteristicInfo, enabled: bool) -> None:
        client = self._require_client()
        key = characteristic.uuid.lower()
        try:
            if enabled and key not in self._notifying:
                callback = self._callbacks.get(key)
                if callback is None:
                    raise TransportError(
                        message=f"No notification callback registered for {characteristic.uuid}",
                        code="NO_CALLBACK",
                    )
                await client.start_notify(
                    self._target(characteristic),
                    lambda _sender, data: callback(bytes(data)),
                )
                self._notifying.add(key)
            elif not enabled and key in self._notifying:
                self._notifying.discard(key)
                await client.stop_notify(self._target(characteristic))
        except BleakError as e:
            raise TransportError(
                message=f"Setting notify={enabled} on {characteristic.uuid} failed: {e}",
                code="NOTIFY_FAILED",
            ) from e

    async def stop_notify(self, characteristic: CharacteristicInfo) -> None:
        key = characteristic.uuid.lower()
        self._callbacks.pop(key, None)
        if key in self._notifying and self._client is not None:
            await self.set_notify(characteristic, False)

    def _target(self, characteristic: CharacteristicInfo) -> Any:
        return characteristic.handle if characteristic.handle is not None else characteristic.uuid

    def _require_client(self) -> BleakClient:
        if self._client is None:
            raise TransportError(message="Not connected", code="NOT_CONNECTED")
        return self._client

    def get_info(self) -> dict[str, Any]:
        return {
            "type": "ble",
            "address": self._address,
            "connected": self.is_connected(),
            "notifying": sorted(self._notifying),
        }
