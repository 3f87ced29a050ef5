"""
Tacho Link command line.

Scans for adapters, authenticates, downloads vehicle unit and driver card
data, and probes unknown devices. ``--simulate`` runs every command
against the built-in simulated tachograph instead of a real adapter.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich import print
from rich.table import Table

from tacho_link import __version__
from tacho_link.core.app_logging import setup_logging
from tacho_link.core.config import AppConfig, load_config, save_config
from tacho_link.core.engine import AuthResult, SessionEngine
from tacho_link.core.errors import SessionError
from tacho_link.core.session import Session
from tacho_link.download.coordinator import DownloadCoordinator, DownloadRecord
from tacho_link.download.probe import DiagnosticProbe, ProbeReport, ProbeResult
from tacho_link.download.storage import FileArtifactStore
from tacho_link.protocols.dialect import Command, DateRange, DialectError, DialectRegistry
from tacho_link.sim.mock_device import SimulatedTachograph, SimulationConfig
from tacho_link.transport.base import BaseTransport, TransportError
from tacho_link.transport.ble_transport import BleTransport, scan_devices
from tacho_link.transport.mock_transport import MockTransport

SIMULATED_ADDRESS = "SIM:00:00:00:00:01"

app = typer.Typer(help="Tachograph BLE adapter download tool")


class DownloadKind(str, Enum):
    vu = "vu"
    driver = "driver"


@dataclass
class CliState:
    config: AppConfig
    registry: DialectRegistry
    config_path: Optional[Path] = None


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Annotated[
        Optional[Path], typer.Option("--config", help="Configuration file (YAML or JSON)")
    ] = None,
    debug: Annotated[bool, typer.Option(help="Enable debug logging")] = False,
    raw: Annotated[bool, typer.Option(help="Log every TX/RX payload")] = False,
    simulate: Annotated[
        bool, typer.Option(help="Use the simulated tachograph instead of BLE")
    ] = False,
) -> None:
    """Load configuration and set up logging for every command."""
    config = load_config(config_file)
    if simulate:
        config.simulation_mode = True
    setup_logging(
        Path(config.logging.log_dir),
        debug=debug or config.logging.log_level.upper() == "DEBUG",
        log_raw_protocol=raw or config.logging.log_raw_protocol,
    )
    ctx.obj = CliState(
        config=config,
        registry=DialectRegistry(config.protocol.dialects_dir),
        config_path=config_file,
    )


@app.command()
def version() -> None:
    """Show the version."""
    print(f"tacho-link {__version__}")


@app.command()
def scan(
    ctx: typer.Context,
    timeout: Annotated[Optional[float], typer.Option(help="Scan duration in seconds")] = None,
    name: Annotated[Optional[str], typer.Option(help="Only show names containing this")] = None,
) -> None:
    """List advertising BLE devices."""
    config = _state(ctx).config
    if config.simulation_mode:
        print(f"Simulated tachograph at [bold]{SIMULATED_ADDRESS}[/bold]")
        return

    print("Scanning for Bluetooth devices…")
    try:
        devices = asyncio.run(
            scan_devices(timeout=timeout or config.connection.scan_timeout, name_filter=name)
        )
    except TransportError as e:
        _fail(str(e))

    table = Table("Name", "Address", "RSSI")
    for device in devices:
        table.add_row(device.name or "(unknown)", device.address, str(device.rssi))
    print(table)


@app.command()
def info(
    ctx: typer.Context,
    address: Annotated[Optional[str], typer.Argument(help="Device address")] = None,
) -> None:
    """Connect and show the resolved channels and characteristics."""
    state = _state(ctx)

    async def _info(engine: SessionEngine, session: Session) -> None:
        details = engine.device_info(session)
        table = Table("Service", "Characteristic", "Properties")
        for char in session.characteristics:
            table.add_row(char.service_uuid, char.uuid, ", ".join(sorted(char.properties)))
        print(table)
        print(f"Write channel:  {details['write'] or '[red]unresolved[/red]'}")
        print(f"Notify channel: {details['notify'] or '[yellow]unresolved[/yellow]'}")
        print(f"Dialect:        {details['dialect']}")

    _run_session(state, address, _info)


@app.command()
def download(
    ctx: typer.Context,
    address: Annotated[Optional[str], typer.Argument(help="Device address")] = None,
    kind: Annotated[DownloadKind, typer.Option(help="What to download")] = DownloadKind.vu,
    password: Annotated[Optional[str], typer.Option(help="Adapter password")] = None,
    start: Annotated[
        Optional[datetime], typer.Option(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M"])
    ] = None,
    end: Annotated[
        Optional[datetime], typer.Option(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M"])
    ] = None,
    output: Annotated[Optional[Path], typer.Option(help="Directory for artifacts")] = None,
    force: Annotated[
        bool, typer.Option(help="Download even if authentication was not confirmed")
    ] = False,
) -> None:
    """Download vehicle unit (.tgd) or driver card (.ddd) data."""
    state = _state(ctx)
    date_range = _date_range(start, end)

    async def _download(engine: SessionEngine, session: Session) -> DownloadRecord:
        await _authenticate(engine, session, password, force)
        coordinator = _coordinator(state, engine, session, output)
        if kind is DownloadKind.driver:
            return await coordinator.download_driver_card(date_range)
        return await coordinator.download_vehicle_unit(date_range)

    record = _run_session(state, address, _download)
    _report_record(record)


@app.command()
def custom(
    ctx: typer.Context,
    opcode: Annotated[str, typer.Argument(help="Command bytes in hex, e.g. '84 00'")],
    address: Annotated[Optional[str], typer.Argument(help="Device address")] = None,
    label: Annotated[Optional[str], typer.Option(help="Label for logs")] = None,
    password: Annotated[Optional[str], typer.Option(help="Adapter password")] = None,
    output: Annotated[Optional[Path], typer.Option(help="Directory for artifacts")] = None,
    force: Annotated[
        bool, typer.Option(help="Send even if authentication was not confirmed")
    ] = False,
) -> None:
    """Send an arbitrary command and save the reply as a .bin artifact."""
    state = _state(ctx)
    try:
        command = Command.from_hex(opcode, label)
    except ValueError as e:
        _fail(f"Invalid opcode {opcode!r}: {e}")

    async def _custom(engine: SessionEngine, session: Session) -> DownloadRecord:
        await _authenticate(engine, session, password, force)
        coordinator = _coordinator(state, engine, session, output)
        return await coordinator.send_custom_command(command.opcode, command.label)

    record = _run_session(state, address, _custom)
    _report_record(record)


@app.command()
def probe(
    ctx: typer.Context,
    address: Annotated[Optional[str], typer.Argument(help="Device address")] = None,
    password: Annotated[Optional[str], typer.Option(help="Authenticate first")] = None,
    export: Annotated[Optional[Path], typer.Option(help="Write the report as YAML")] = None,
) -> None:
    """Send the probe battery and show what the device answers."""
    state = _state(ctx)

    def _show(result: ProbeResult) -> None:
        status = f"{len(result.responses)} response(s)" if result.answered else "no response"
        print(f"  {result.command}: {status}")

    async def _probe(engine: SessionEngine, session: Session) -> ProbeReport:
        if password is not None:
            await _authenticate(engine, session, password, force=True)
        return await DiagnosticProbe(engine, session, state.config.probe).run(_show)

    report = _run_session(state, address, _probe)

    table = Table("Command", "Label", "Responses")
    for result in report.results:
        table.add_row(
            result.command.opcode.hex(" "),
            result.command.label,
            "\n".join(result.to_dict()["responses"]) or "[dim]none[/dim]",
        )
    print(table)

    if export is not None:
        report.export_yaml(export)
        print(f"Report written to {export}")


@app.command(name="dialects")
def list_dialects(ctx: typer.Context) -> None:
    """List known protocol dialects."""
    registry = _state(ctx).registry
    table = Table("Name", "Description", "Write UUID", "Notify UUID")
    for name in registry.names():
        dialect = registry.get(name)
        table.add_row(name, dialect.description, dialect.write_uuid, dialect.notify_uuid)
    print(table)


@app.command(name="export-dialect")
def export_dialect(
    ctx: typer.Context,
    file: Annotated[Path, typer.Argument(help="Destination .yaml or .json file")],
    name: Annotated[str, typer.Option(help="Dialect to export")] = "digiblu",
) -> None:
    """Export a dialect as an editable pack file."""
    try:
        ok = _state(ctx).registry.export_to_file(name, file)
    except DialectError as e:
        _fail(str(e))
    if not ok:
        _fail(f"Could not write {file}")
    print(f"Dialect [bold]{name}[/bold] exported to {file}")


# ────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────
def _fail(message: str) -> None:
    print(f"[red]{message}[/red]")
    raise typer.Exit(code=1)


def _date_range(start: datetime | None, end: datetime | None) -> DateRange | None:
    if start is None and end is None:
        return None
    if start is None or end is None:
        _fail("--start and --end must be given together")
    try:
        return DateRange(start, end)
    except ValueError as e:
        _fail(str(e))


def _build_transport(config: AppConfig) -> BaseTransport:
    size = config.protocol.notify_queue_size
    if config.simulation_mode:
        return MockTransport(peer=SimulatedTachograph(SimulationConfig()), max_pending=size)
    return BleTransport(max_pending=size)


def _run_session(state: CliState, address: str | None, operation):
    """Connect, run ``operation(engine, session)`` and always disconnect."""
    config = state.config
    if address is None:
        address = (
            SIMULATED_ADDRESS
            if config.simulation_mode
            else config.connection.preferred_address or config.last_known_address
        )
    if address is None:
        _fail("No device address given and none remembered; run 'scan' first")

    async def _session():
        transport = _build_transport(config)
        try:
            engine = SessionEngine.from_config(config, transport, state.registry)
        except DialectError as e:
            _fail(str(e))
        session = await engine.connect(address)
        try:
            return await operation(engine, session)
        finally:
            await engine.disconnect(session)

    try:
        result = asyncio.run(_session())
    except (SessionError, TransportError) as e:
        _fail(f"Error: {e}")

    if not config.simulation_mode and config.last_known_address != address:
        config.last_known_address = address
        save_config(config, state.config_path)
    return result


async def _authenticate(
    engine: SessionEngine, session: Session, password: str | None, force: bool
) -> AuthResult | None:
    if password is None:
        if not force:
            print("[yellow]No password given; the device may refuse downloads[/yellow]")
        return None

    result = await engine.authenticate(session, password)
    colour = "green" if result.authenticated else "red"
    verdict = result.verdict.name if result.verdict else "UNVERIFIED"
    print(f"[{colour}]Authentication {verdict}[/{colour}]: {result.rationale}")

    if not result.authenticated:
        if not force:
            raise typer.Exit(code=1)
        engine.force_authenticated(session, True)
    return result


def _coordinator(
    state: CliState, engine: SessionEngine, session: Session, output: Path | None
) -> DownloadCoordinator:
    store = FileArtifactStore(output or Path(state.config.storage.output_dir))
    return DownloadCoordinator(
        engine,
        session,
        store,
        on_status=lambda status: print(f"[cyan]{status}[/cyan]"),
    )


def _report_record(record: DownloadRecord) -> None:
    if record.error:
        _fail(f"Error: {record.error}")
    if not record.data:
        print("[yellow]No data received[/yellow]")
        raise typer.Exit(code=2)
    note = " [yellow](partial)[/yellow]" if record.partial else ""
    print(f"[green]{record.size} bytes saved to {record.location}[/green]{note}")


if __name__ == "__main__":
    app()
