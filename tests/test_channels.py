"""
Tests for write/notify channel resolution.
"""

import pytest

from tacho_link.core.errors import ChannelResolutionFailed
from tacho_link.protocols.channels import ChannelResolver
from tacho_link.transport.base import (
    PROP_INDICATE,
    PROP_NOTIFY,
    PROP_READ,
    PROP_WRITE,
    PROP_WRITE_NO_RESPONSE,
    CharacteristicInfo,
)
from tacho_link.transport.mock_transport import NUS_NOTIFY, NUS_WRITE, nordic_uart_characteristics

SERVICE = "0000fff0-0000-1000-8000-00805f9b34fb"


def _char(uuid: str, *props: str) -> CharacteristicInfo:
    return CharacteristicInfo(SERVICE, uuid, frozenset(props))


class TestChannelResolver:
    """Tests for ChannelResolver."""

    def test_known_uuids(self):
        """Test Nordic UART characteristics are found by UUID."""
        pair = ChannelResolver().resolve(nordic_uart_characteristics())

        assert pair.write.uuid == NUS_WRITE
        assert pair.notify is not None
        assert pair.notify.uuid == NUS_NOTIFY
        assert pair.can_verify

    def test_known_uuid_preferred_over_order(self):
        """Test a known UUID wins even when a capable one comes first."""
        chars = [
            _char("0000fff1-0000-1000-8000-00805f9b34fb", PROP_WRITE, PROP_NOTIFY),
            *nordic_uart_characteristics(),
        ]
        pair = ChannelResolver().resolve(chars)

        assert pair.write.uuid == NUS_WRITE
        assert pair.notify.uuid == NUS_NOTIFY

    def test_uuid_match_is_case_insensitive(self):
        """Test upper-case discovery results still match."""
        chars = [
            _char(NUS_WRITE.upper(), PROP_WRITE),
            _char(NUS_NOTIFY.upper(), PROP_NOTIFY),
        ]
        pair = ChannelResolver().resolve(chars)

        assert pair.write.uuid == NUS_WRITE.upper()
        assert pair.notify.uuid == NUS_NOTIFY.upper()

    def test_capability_fallback_first_match(self):
        """Test unknown devices fall back to the first capable characteristic."""
        chars = [
            _char("0000fff1-0000-1000-8000-00805f9b34fb", PROP_READ),
            _char("0000fff2-0000-1000-8000-00805f9b34fb", PROP_WRITE_NO_RESPONSE),
            _char("0000fff3-0000-1000-8000-00805f9b34fb", PROP_WRITE),
            _char("0000fff4-0000-1000-8000-00805f9b34fb", PROP_INDICATE),
            _char("0000fff5-0000-1000-8000-00805f9b34fb", PROP_NOTIFY),
        ]
        pair = ChannelResolver().resolve(chars)

        assert pair.write.uuid.startswith("0000fff2")
        assert pair.notify.uuid.startswith("0000fff4")

    def test_same_characteristic_for_both_roles(self):
        """Test one characteristic may carry both roles."""
        both = _char("0000fff1-0000-1000-8000-00805f9b34fb", PROP_WRITE, PROP_NOTIFY)
        pair = ChannelResolver().resolve([both])

        assert pair.write == both
        assert pair.notify == both

    def test_missing_write_fails(self):
        """Test resolution fails without a writable characteristic."""
        chars = [_char("0000fff1-0000-1000-8000-00805f9b34fb", PROP_NOTIFY)]

        with pytest.raises(ChannelResolutionFailed):
            ChannelResolver().resolve(chars, require_notify=False)

    def test_missing_notify_fails_when_required(self):
        """Test resolution fails without notify when it is required."""
        chars = [_char("0000fff1-0000-1000-8000-00805f9b34fb", PROP_WRITE)]

        with pytest.raises(ChannelResolutionFailed) as exc_info:
            ChannelResolver().resolve(chars)
        assert exc_info.value.code == "CHANNEL_RESOLUTION_FAILED"
        assert not exc_info.value.recoverable

    def test_missing_notify_allowed(self):
        """Test a write-only device resolves when notify is optional."""
        chars = [_char("0000fff1-0000-1000-8000-00805f9b34fb", PROP_WRITE)]
        pair = ChannelResolver().resolve(chars, require_notify=False)

        assert pair.notify is None
        assert not pair.can_verify

    def test_empty_discovery(self):
        """Test resolution fails on an empty discovery result."""
        with pytest.raises(ChannelResolutionFailed):
            ChannelResolver().resolve([])
