"""
Authentication Response Classifier

Maps the first notified response to an authentication write (or the lack
of one) to a verdict. Classification is a pure function of the payload and
the dialect's ordered rule list.
"""

from dataclasses import dataclass
from enum import Enum

from tacho_link.core.app_logging import hex_dump
from tacho_link.protocols.dialect import ACCEPTED, DIGIBLU, Dialect
from tacho_link.protocols.rules import first_match


class ResponseVerdict(Enum):
    """Outcome of classifying one authentication response."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    AMBIGUOUS_ASSUME_SUCCESS = "ambiguous_assume_success"
    TIMEOUT = "timeout"

    @property
    def grants_access(self) -> bool:
        return self in (ResponseVerdict.ACCEPTED, ResponseVerdict.AMBIGUOUS_ASSUME_SUCCESS)


SILENT_DEVICE_RATIONALE = (
    "No response within the wait window; the device may not confirm "
    "authentication explicitly. Assuming success, the download will verify it."
)


@dataclass(frozen=True)
class Classification:
    """A verdict plus the rule and reasoning that produced it."""

    verdict: ResponseVerdict
    rationale: str
    rule: str | None = None

    @property
    def ambiguous(self) -> bool:
        return self.verdict is ResponseVerdict.AMBIGUOUS_ASSUME_SUCCESS


class ResponseClassifier:
    """Rule-driven classifier for authentication responses."""

    def __init__(self, dialect: Dialect = DIGIBLU) -> None:
        self._dialect = dialect

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    def classify(self, response: bytes | None) -> Classification:
        """
        Classify a response.

        Args:
            response: First non-empty notified payload, or None (or b"")
                when nothing arrived before the timeout

        Returns:
            Classification with verdict and rationale
        """
        if not response:
            if self._dialect.assume_success_on_timeout:
                return Classification(
                    ResponseVerdict.AMBIGUOUS_ASSUME_SUCCESS,
                    SILENT_DEVICE_RATIONALE,
                    "silent-timeout",
                )
            return Classification(
                ResponseVerdict.TIMEOUT,
                "No response within the wait window",
                "silent-timeout",
            )

        rule = first_match(self._dialect.auth_rules, response)
        if rule is not None:
            verdict = _verdict_for(rule.outcome)
            return Classification(
                verdict,
                f"Matched rule '{rule.name}' for {len(response)} byte(s): {hex_dump(response)}",
                rule.name,
            )

        return Classification(
            _verdict_for(self._dialect.auth_default),
            f"No rule matched {len(response)} byte(s): {hex_dump(response)}",
        )


def _verdict_for(outcome: str) -> ResponseVerdict:
    return ResponseVerdict.ACCEPTED if outcome == ACCEPTED else ResponseVerdict.REJECTED


def classify(response: bytes | None, dialect: Dialect = DIGIBLU) -> ResponseVerdict:
    """Convenience wrapper returning only the verdict."""
    return ResponseClassifier(dialect).classify(response).verdict
