"""
End-of-Transmission Detection

Heuristic completion check evaluated once per received packet. The
detector only looks at the latest packet and the running buffer size;
it never revisits earlier packets.
"""

from typing import Protocol

from tacho_link.core.app_logging import get_logger
from tacho_link.protocols.dialect import DIGIBLU, Dialect
from tacho_link.protocols.rules import PatternRule, first_match

logger = get_logger(__name__)


class EndOfTransmissionPredicate(Protocol):
    """Replaceable completion predicate."""

    def __call__(self, packet: bytes, buffered: int) -> bool:
        ...


class EndOfTransmissionDetector:
    """
    Rule-list completion predicate.

    ``buffered`` is the total number of bytes held after appending
    ``packet``.
    """

    def __init__(self, rules: tuple[PatternRule, ...]) -> None:
        self._rules = rules
        self.last_rule: str | None = None

    @classmethod
    def for_dialect(cls, dialect: Dialect = DIGIBLU) -> "EndOfTransmissionDetector":
        return cls(dialect.eot_rules)

    def __call__(self, packet: bytes, buffered: int) -> bool:
        rule = first_match(self._rules, packet, buffered)
        self.last_rule = rule.name if rule else None
        if rule is not None:
            logger.debug(f"End of transmission: rule '{rule.name}' ({buffered} bytes buffered)")
            return True
        return False
