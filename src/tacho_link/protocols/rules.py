"""
Byte Pattern Rules

Declarative byte patterns shared by the response classifier and the
end-of-transmission detector. Rules are plain data so that a dialect pack
can replace them without code changes.
"""

from dataclasses import dataclass, field
from typing import Any


def parse_hex(value: str | bytes | list[int]) -> bytes:
    """Parse "81 00", "8100", b"\\x81\\x00" or [0x81, 0x00] into bytes."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, list):
        return bytes(value)
    cleaned = value.replace(" ", "").replace(":", "").replace("-", "")
    if cleaned.lower().startswith("0x"):
        cleaned = cleaned[2:]
    return bytes.fromhex(cleaned)


@dataclass(frozen=True)
class BytePattern:
    """
    Conjunction of byte-level constraints.

    Every constraint that is set must hold. An empty pattern matches
    every non-empty payload.
    """

    exact: tuple[bytes, ...] = ()  # payload equals one of these
    min_length: int | None = None
    max_length: int | None = None
    first_byte: int | None = None
    suffix: bytes | None = None

    def matches(self, data: bytes) -> bool:
        if not data:
            return False
        if self.exact and bytes(data) not in self.exact:
            return False
        if self.min_length is not None and len(data) < self.min_length:
            return False
        if self.max_length is not None and len(data) > self.max_length:
            return False
        if self.first_byte is not None and data[0] != self.first_byte:
            return False
        if self.suffix is not None and not bytes(data).endswith(self.suffix):
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.exact:
            data["exact"] = [e.hex(" ") for e in self.exact]
        if self.min_length is not None:
            data["min_length"] = self.min_length
        if self.max_length is not None:
            data["max_length"] = self.max_length
        if self.first_byte is not None:
            data["first_byte"] = f"{self.first_byte:02x}"
        if self.suffix is not None:
            data["suffix"] = self.suffix.hex(" ")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BytePattern":
        first = data.get("first_byte")
        if isinstance(first, str):
            first = parse_hex(first)[0]
        suffix = data.get("suffix")
        return cls(
            exact=tuple(parse_hex(e) for e in data.get("exact", [])),
            min_length=data.get("min_length"),
            max_length=data.get("max_length"),
            first_byte=first,
            suffix=parse_hex(suffix) if suffix is not None else None,
        )


@dataclass(frozen=True)
class PatternRule:
    """A named pattern with an outcome attached."""

    name: str
    pattern: BytePattern = field(default_factory=BytePattern)
    outcome: str = ""
    # Only applies once more than this many bytes have been buffered
    buffered_above: int | None = None

    def applies(self, data: bytes, buffered: int = 0) -> bool:
        if self.buffered_above is not None and buffered <= self.buffered_above:
            return False
        return self.pattern.matches(data)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "pattern": self.pattern.to_dict()}
        if self.outcome:
            data["outcome"] = self.outcome
        if self.buffered_above is not None:
            data["buffered_above"] = self.buffered_above
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PatternRule":
        return cls(
            name=data["name"],
            pattern=BytePattern.from_dict(data.get("pattern", {})),
            outcome=data.get("outcome", ""),
            buffered_above=data.get("buffered_above"),
        )


def first_match(rules: tuple[PatternRule, ...], data: bytes, buffered: int = 0) -> PatternRule | None:
    """Return the first rule that applies, in declaration order."""
    for rule in rules:
        if rule.applies(data, buffered):
            return rule
    return None
