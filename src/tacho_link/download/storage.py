"""
Artifact Storage

Persists downloaded byte buffers. The stored payload is exactly the
transfer buffer: no header, no footer.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from pathlib import Path

from tacho_link.core.app_logging import get_logger

logger = get_logger(__name__)


class ArtifactKind(Enum):
    """Kind of downloaded artifact, valued by file extension."""

    VEHICLE_UNIT = ".tgd"
    DRIVER_CARD = ".ddd"
    CUSTOM = ".bin"

    @property
    def extension(self) -> str:
        return self.value


def artifact_name(kind: ArtifactKind, moment: datetime | None = None) -> str:
    """
    Timestamped artifact file name.

    ``download_<ISO 8601 timestamp with ':' replaced by '-'><ext>``
    """
    timestamp = (moment or datetime.now()).isoformat().replace(":", "-")
    return f"download_{timestamp}{kind.extension}"


class ArtifactStore(ABC):
    """Destination for downloaded artifacts."""

    @abstractmethod
    def save(self, name: str, data: bytes) -> str:
        """
        Persist ``data`` under ``name``.

        Returns:
            Location of the stored artifact
        """


class FileArtifactStore(ArtifactStore):
    """Writes artifacts into a directory."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def save(self, name: str, data: bytes) -> str:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._directory / name
        path.write_bytes(data)
        logger.info(f"Artifact saved: {path} ({len(data)} bytes)")
        return str(path)


class MemoryArtifactStore(ArtifactStore):
    """Keeps artifacts in memory (simulation and tests)."""

    def __init__(self) -> None:
        self.artifacts: dict[str, bytes] = {}

    def save(self, name: str, data: bytes) -> str:
        self.artifacts[name] = bytes(data)
        return name
