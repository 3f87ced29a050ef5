"""
Diagnostic Probe

Sends a fixed battery of candidate commands and records whatever the
device notifies back for each one. Used to map the behaviour of adapters
whose protocol is not known.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import yaml

from tacho_link.core.app_logging import get_logger, hex_dump, log_audit_event
from tacho_link.core.config import ProbeConfig
from tacho_link.core.engine import SessionEngine
from tacho_link.core.session import Session
from tacho_link.protocols.dialect import Command

logger = get_logger(__name__)


@dataclass
class ProbeResult:
    """Responses recorded for one probe command."""

    command: Command
    responses: list[bytes] = field(default_factory=list)

    @property
    def answered(self) -> bool:
        return bool(self.responses)

    def to_dict(self) -> dict[str, Any]:
        return {
            "opcode": self.command.opcode.hex(" "),
            "label": self.command.label,
            "responses": [hex_dump(r) for r in self.responses],
        }


@dataclass
class ProbeReport:
    """Ordered results of a probe run."""

    address: str
    results: list[ProbeResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def answered(self) -> list[ProbeResult]:
        return [r for r in self.results if r.answered]

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "started_at": self.started_at.isoformat(),
            "results": [r.to_dict() for r in self.results],
        }

    def export_yaml(self, file: Path) -> None:
        file.parent.mkdir(parents=True, exist_ok=True)
        with open(file, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)


ProbeCallback = Callable[[ProbeResult], None]


class DiagnosticProbe:
    """Runs the probe battery over one session."""

    def __init__(
        self,
        engine: SessionEngine,
        session: Session,
        config: ProbeConfig | None = None,
        commands: tuple[Command, ...] | None = None,
    ) -> None:
        self._engine = engine
        self._session = session
        self._config = config or ProbeConfig()
        self._commands = commands if commands is not None else engine.dialect.probe_commands

    @property
    def commands(self) -> tuple[Command, ...]:
        return self._commands

    async def run(self, on_result: ProbeCallback | None = None) -> ProbeReport:
        """
        Probe the device.

        A single subscription stays open for the whole battery. Before each
        command the stream is drained so late replies to the previous
        command are not attributed to the next one.

        Raises:
            AlreadyInProgress: If another operation holds the session
            ChannelResolutionFailed: If there is no write or notify channel
            TransportWriteFailed: If a probe command could not be written
        """
        report = ProbeReport(address=self._session.address)
        logger.info(f"Probing {self._session.address} with {len(self._commands)} commands")

        async with self._engine.exchange(self._session, "probe") as channel:
            await asyncio.sleep(self._config.settle_delay)

            for index, command in enumerate(self._commands):
                stale = channel.stream.drain()
                if stale:
                    logger.debug(f"Discarded {len(stale)} stale packets before {command}")

                await channel.send(command, confirm_delivery=False)
                responses = await channel.stream.collect(self._config.response_window)
                result = ProbeResult(command=command, responses=responses)
                report.results.append(result)

                if responses:
                    logger.info(
                        f"{command}: {len(responses)} responses, first {hex_dump(responses[0])}"
                    )
                else:
                    logger.info(f"{command}: no response")

                if on_result is not None:
                    try:
                        on_result(result)
                    except Exception as e:
                        logger.error(f"Result callback error: {e}")

                if index < len(self._commands) - 1:
                    await asyncio.sleep(self._config.inter_command_delay)

        log_audit_event(
            "probe",
            f"Probed {self._session.address}",
            {
                "commands": len(report.results),
                "answered": [r.command.opcode.hex(" ") for r in report.answered],
            },
        )
        return report
