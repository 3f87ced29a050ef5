"""
Tests for end-of-transmission detection.
"""

import pytest

from tacho_link.protocols.eot import EndOfTransmissionDetector
from tacho_link.protocols.rules import BytePattern, PatternRule


@pytest.fixture
def detector() -> EndOfTransmissionDetector:
    return EndOfTransmissionDetector.for_dialect()


class TestEndOfTransmission:
    """Tests for the Digiblu completion rules."""

    def test_eot_marker(self, detector: EndOfTransmissionDetector):
        """Test a trailing 0x04 completes the transfer."""
        assert detector(bytes([0x30, 0x31, 0x04]), 25)
        assert detector.last_rule == "eot-marker"

    def test_lone_eot_packet(self, detector: EndOfTransmissionDetector):
        """Test a packet holding only 0x04 completes the transfer."""
        assert detector(bytes([0x04]), 1)

    def test_double_zero_tail(self, detector: EndOfTransmissionDetector):
        """Test a trailing 00 00 completes the transfer."""
        assert detector(bytes([0x10, 0x00, 0x00]), 3)
        assert detector.last_rule == "double-zero-tail"

    def test_single_zero_tail_continues(self, detector: EndOfTransmissionDetector):
        """Test a single trailing zero is not enough."""
        assert not detector(bytes([0x10, 0x11, 0x00]), 3)

    def test_short_packet_after_volume(self, detector: EndOfTransmissionDetector):
        """Test a short packet ends the transfer once enough is buffered."""
        assert detector(bytes([0x10] * 5), 1005)
        assert detector.last_rule == "short-tail-after-volume"

    def test_short_packet_threshold_is_exclusive(self, detector: EndOfTransmissionDetector):
        """Test exactly 1000 buffered bytes does not trigger."""
        assert not detector(bytes([0x10] * 5), 1000)

    def test_full_packet_after_volume_continues(self, detector: EndOfTransmissionDetector):
        """Test a full 20 byte packet keeps the transfer open."""
        assert not detector(bytes([0x10] * 20), 5000)
        assert detector.last_rule is None

    def test_short_packet_early_continues(self, detector: EndOfTransmissionDetector):
        """Test short packets early in a transfer do not end it."""
        assert not detector(bytes([0x10] * 5), 25)

    def test_replaceable_rules(self):
        """Test a custom rule list replaces the defaults."""
        detector = EndOfTransmissionDetector(
            (PatternRule("etx", BytePattern(suffix=b"\x03")),)
        )
        assert detector(b"\x10\x03", 2)
        assert not detector(b"\x10\x04", 2)
