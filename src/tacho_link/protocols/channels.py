"""
Channel Resolution

Locates the write-capable and notify-capable characteristics of a
connected device: by the dialect's known UUIDs first, then by capability.
"""

from dataclasses import dataclass

from tacho_link.core.app_logging import get_logger
from tacho_link.core.errors import ChannelResolutionFailed
from tacho_link.protocols.dialect import DIGIBLU, Dialect
from tacho_link.transport.base import CharacteristicInfo

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChannelPair:
    """Write and notify roles bound for one connection."""

    write: CharacteristicInfo
    notify: CharacteristicInfo | None = None

    @property
    def can_verify(self) -> bool:
        return self.notify is not None


class ChannelResolver:
    """Resolve write/notify roles against a discovery result."""

    def __init__(self, dialect: Dialect = DIGIBLU) -> None:
        self._dialect = dialect

    def resolve(
        self,
        characteristics: list[CharacteristicInfo],
        require_notify: bool = True,
    ) -> ChannelPair:
        """
        Pick the write and notify characteristics.

        Args:
            characteristics: Discovery result, in discovery order
            require_notify: Fail when no notify role can be found

        Returns:
            The resolved pair

        Raises:
            ChannelResolutionFailed: If a required role is missing
        """
        write = self._by_uuid(characteristics, self._dialect.write_uuid)
        notify = self._by_uuid(characteristics, self._dialect.notify_uuid)

        if write is None:
            write = next((c for c in characteristics if c.can_write), None)
            if write is not None:
                logger.info(f"Using write characteristic by capability: {write.uuid}")

        if notify is None:
            notify = next((c for c in characteristics if c.can_notify), None)
            if notify is not None:
                logger.info(f"Using notify characteristic by capability: {notify.uuid}")

        if write is None:
            raise ChannelResolutionFailed(
                f"No writable characteristic among {len(characteristics)} discovered"
            )
        if notify is None and require_notify:
            raise ChannelResolutionFailed(
                f"No notify/indicate characteristic among {len(characteristics)} discovered"
            )

        return ChannelPair(write=write, notify=notify)

    @staticmethod
    def _by_uuid(
        characteristics: list[CharacteristicInfo], uuid: str | None
    ) -> CharacteristicInfo | None:
        if not uuid:
            return None
        return next((c for c in characteristics if c.matches(uuid)), None)
