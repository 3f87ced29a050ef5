"""
Error Taxonomy

Errors raised by the session engine. Transport-level failures live in
``tacho_link.transport.base``; ambiguous classifications and partial
transfers are outcomes, not exceptions.
"""

from dataclasses import dataclass


@dataclass(eq=False)
class SessionError(Exception):
    """Base class for session engine errors."""

    message: str
    code: str = "SESSION_ERROR"
    recoverable: bool = True

    def __str__(self) -> str:
        return f"{self.__class__.__name__}[{self.code}]: {self.message}"


@dataclass(eq=False)
class ChannelResolutionFailed(SessionError):
    """No usable write or notify characteristic was found."""

    code: str = "CHANNEL_RESOLUTION_FAILED"
    recoverable: bool = False


@dataclass(eq=False)
class TransportWriteFailed(SessionError):
    """A single characteristic write failed; the command sequence is aborted."""

    code: str = "TRANSPORT_WRITE_FAILED"
    cause: Exception | None = None

    def __str__(self) -> str:
        base = super().__str__()
        if self.cause is not None:
            return f"{base} (cause: {self.cause})"
        return base


@dataclass(eq=False)
class AlreadyInProgress(SessionError):
    """Another exclusive operation is running on the session."""

    code: str = "ALREADY_IN_PROGRESS"


@dataclass(eq=False)
class SessionClosed(SessionError):
    """The session was disconnected and can no longer be used."""

    code: str = "SESSION_CLOSED"
    recoverable: bool = False
