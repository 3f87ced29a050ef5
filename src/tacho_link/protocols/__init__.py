"""
Protocol Package

Dialect definitions, channel resolution and the byte-pattern heuristics
for authentication responses and end of transmission.
"""

from tacho_link.protocols.channels import ChannelPair, ChannelResolver
from tacho_link.protocols.classifier import (
    Classification,
    ResponseClassifier,
    ResponseVerdict,
    classify,
)
from tacho_link.protocols.dialect import (
    DIGIBLU,
    Command,
    DateRange,
    Dialect,
    DialectError,
    DialectRegistry,
)
from tacho_link.protocols.eot import EndOfTransmissionDetector

__all__ = [
    "ChannelPair",
    "ChannelResolver",
    "Classification",
    "ResponseClassifier",
    "ResponseVerdict",
    "classify",
    "DIGIBLU",
    "Command",
    "DateRange",
    "Dialect",
    "DialectError",
    "DialectRegistry",
    "EndOfTransmissionDetector",
]
