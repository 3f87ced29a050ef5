"""
Transport Package

BLE transport interface with bleak and mock implementations.
"""

from tacho_link.transport.base import (
    BaseTransport,
    CharacteristicInfo,
    NotificationStream,
    TransportError,
)
from tacho_link.transport.mock_transport import MockTransport

__all__ = [
    "BaseTransport",
    "CharacteristicInfo",
    "NotificationStream",
    "TransportError",
    "MockTransport",
]
