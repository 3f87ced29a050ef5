"""
Download Coordinator

Named download operations over the session engine: picks the download
command and artifact kind, reports status and progress, and persists
the result. Errors become FAILED records with a readable status; nothing
is retried.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Callable

from tacho_link.core.app_logging import get_logger, log_audit_event
from tacho_link.core.engine import SessionEngine, TransferPhase
from tacho_link.core.errors import SessionError
from tacho_link.core.session import Session
from tacho_link.download.storage import ArtifactKind, ArtifactStore, artifact_name
from tacho_link.protocols.dialect import (
    DOWNLOAD_DRIVER_CARD,
    DOWNLOAD_VEHICLE_UNIT,
    Command,
    DateRange,
)
from tacho_link.transport.base import TransportError

logger = get_logger(__name__)


class DownloadStatus(Enum):
    """Final status of a download."""

    SUCCESS = auto()
    NO_DATA = auto()
    FAILED = auto()


@dataclass(frozen=True)
class DownloadRecord:
    """Immutable result of one download operation."""

    data: bytes
    status: DownloadStatus
    kind: ArtifactKind
    label: str
    artifact_name: str | None = None
    location: str | None = None
    partial: bool = False
    error: str | None = None
    finished_at: datetime | None = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def ok(self) -> bool:
        return self.status is DownloadStatus.SUCCESS


StatusCallback = Callable[[str], None]
ProgressCallback = Callable[[int], None]
CompletionCallback = Callable[[DownloadRecord], None]


class DownloadCoordinator:
    """
    High-level download driver for one session.

    The session should already be authenticated; the coordinator does
    not authenticate on its own.
    """

    def __init__(
        self,
        engine: SessionEngine,
        session: Session,
        store: ArtifactStore,
        on_status: StatusCallback | None = None,
        on_progress: ProgressCallback | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> None:
        self._engine = engine
        self._session = session
        self._store = store
        self.on_status = on_status
        self.on_progress = on_progress
        self.on_complete = on_complete
        self._current_label = ""
        self.history: list[DownloadRecord] = []

    @property
    def is_downloading(self) -> bool:
        return self._session.downloading

    async def download_vehicle_unit(self, date_range: DateRange | None = None) -> DownloadRecord:
        """Download Vehicle Unit data (TGD file)."""
        command = self._engine.dialect.command(DOWNLOAD_VEHICLE_UNIT)
        return await self._perform_download(command, ArtifactKind.VEHICLE_UNIT, date_range)

    async def download_driver_card(self, date_range: DateRange | None = None) -> DownloadRecord:
        """Download Driver Card data (DDD file)."""
        command = self._engine.dialect.command(DOWNLOAD_DRIVER_CARD)
        return await self._perform_download(command, ArtifactKind.DRIVER_CARD, date_range)

    async def send_custom_command(
        self, opcode: bytes | str | list[int], label: str | None = None
    ) -> DownloadRecord:
        """Send an arbitrary command and capture whatever comes back."""
        try:
            command = Command.from_hex(opcode, label or "Custom command")
        except ValueError as e:
            logger.error(f"Invalid custom command {opcode!r}: {e}")
            self._update_status(f"Error: {e}")
            return self._finish(
                DownloadRecord(
                    data=b"",
                    status=DownloadStatus.FAILED,
                    kind=ArtifactKind.CUSTOM,
                    label=label or "Custom command",
                    error=str(e),
                    finished_at=datetime.now(),
                )
            )
        return await self._perform_download(command, ArtifactKind.CUSTOM, None)

    async def _perform_download(
        self,
        command: Command,
        kind: ArtifactKind,
        date_range: DateRange | None,
    ) -> DownloadRecord:
        self._current_label = command.label
        self._update_status(f"Preparing download of {command.label}...")

        self._engine.add_phase_callback(self._on_phase)
        try:
            result = await self._engine.download(
                self._session,
                command,
                date_range=date_range,
                on_packet=self._on_packet,
            )
        except (SessionError, TransportError) as e:
            logger.error(f"Download of {command.label} failed: {e}")
            self._update_status(f"Error: {e}")
            return self._finish(
                DownloadRecord(
                    data=b"",
                    status=DownloadStatus.FAILED,
                    kind=kind,
                    label=command.label,
                    error=str(e),
                    finished_at=datetime.now(),
                )
            )
        finally:
            self._engine.remove_phase_callback(self._on_phase)

        if not result.data:
            self._update_status("No data received")
            return self._finish(
                DownloadRecord(
                    data=b"",
                    status=DownloadStatus.NO_DATA,
                    kind=kind,
                    label=command.label,
                    partial=result.partial,
                    finished_at=datetime.now(),
                )
            )

        name = artifact_name(kind)
        try:
            location = self._store.save(name, result.data)
        except OSError as e:
            logger.error(f"Saving {name} failed: {e}")
            self._update_status(f"Error: could not save {name}: {e}")
            return self._finish(
                DownloadRecord(
                    data=result.data,
                    status=DownloadStatus.FAILED,
                    kind=kind,
                    label=command.label,
                    artifact_name=name,
                    partial=result.partial,
                    error=str(e),
                    finished_at=datetime.now(),
                )
            )

        suffix = " (partial, no end-of-transmission seen)" if result.partial else ""
        self._update_status(
            f"Download complete: {len(result.data)} bytes saved to {name}{suffix}"
        )
        log_audit_event(
            "download_saved",
            f"{command.label} saved as {name}",
            {
                "address": self._session.address,
                "bytes": len(result.data),
                "packets": result.packets,
                "partial": result.partial,
                "eot_rule": result.eot_rule,
            },
        )
        return self._finish(
            DownloadRecord(
                data=result.data,
                status=DownloadStatus.SUCCESS,
                kind=kind,
                label=command.label,
                artifact_name=name,
                location=location,
                partial=result.partial,
                finished_at=datetime.now(),
            )
        )

    def _finish(self, record: DownloadRecord) -> DownloadRecord:
        self.history.append(record)
        if record.ok and self.on_complete is not None:
            self.on_complete(record)
        return record

    def _on_phase(self, phase: TransferPhase) -> None:
        messages = {
            TransferPhase.CONFIGURING_CHANNEL: "Configuring receive channel...",
            TransferPhase.SENDING_INIT: "Starting session with tachograph...",
            TransferPhase.SETTING_DATE_RANGE: "Setting date range...",
            TransferPhase.REQUESTING: f"Downloading {self._current_label}...",
            TransferPhase.CLOSING: "Closing session...",
        }
        message = messages.get(phase)
        if message:
            self._update_status(message)

    def _on_packet(self, packet: bytes, total: int) -> None:
        if self.on_progress is not None:
            self.on_progress(total)

    def _update_status(self, status: str) -> None:
        logger.info(status)
        if self.on_status is not None:
            try:
                self.on_status(status)
            except Exception as e:
                logger.error(f"Status callback error: {e}")
