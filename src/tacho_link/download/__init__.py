"""
Download Package

Download coordination, artifact storage and the diagnostic probe.
"""

from tacho_link.download.coordinator import (
    DownloadCoordinator,
    DownloadRecord,
    DownloadStatus,
)
from tacho_link.download.probe import DiagnosticProbe, ProbeReport, ProbeResult
from tacho_link.download.storage import (
    ArtifactKind,
    ArtifactStore,
    FileArtifactStore,
    MemoryArtifactStore,
    artifact_name,
)

__all__ = [
    "DownloadCoordinator",
    "DownloadRecord",
    "DownloadStatus",
    "DiagnosticProbe",
    "ProbeReport",
    "ProbeResult",
    "ArtifactKind",
    "ArtifactStore",
    "FileArtifactStore",
    "MemoryArtifactStore",
    "artifact_name",
]
