"""
Session Engine

Drives the protocol state machine for one device connection:

    IDLE -> AUTHENTICATING -> AUTHENTICATED -> DOWNLOADING -> CLOSING -> IDLE

The engine never trusts the peer to acknowledge anything. Authentication
outcomes are inferred by the response classifier, download completion by
the end-of-transmission predicate, and every wait is bounded so a silent
device yields a partial result instead of a hang.
"""

import asyncio
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, AsyncIterator, Callable, Iterator

from tacho_link.core.app_logging import get_logger, hex_dump, log_audit_event
from tacho_link.core.config import AppConfig, ConnectionConfig, ProtocolConfig
from tacho_link.core.errors import (
    AlreadyInProgress,
    ChannelResolutionFailed,
    SessionClosed,
    TransportWriteFailed,
)
from tacho_link.core.session import Session, SessionState
from tacho_link.protocols.channels import ChannelPair, ChannelResolver
from tacho_link.protocols.classifier import ResponseClassifier, ResponseVerdict
from tacho_link.protocols.dialect import (
    CLOSE_SESSION,
    DIGIBLU,
    INIT_SESSION,
    Command,
    DateRange,
    Dialect,
    DialectRegistry,
)
from tacho_link.protocols.eot import EndOfTransmissionDetector, EndOfTransmissionPredicate
from tacho_link.transport.base import (
    BaseTransport,
    CharacteristicInfo,
    NotificationStream,
    TransportError,
)

logger = get_logger(__name__)


class TransferPhase(Enum):
    """Steps of a download, reported to phase callbacks."""

    CONFIGURING_CHANNEL = auto()
    SENDING_INIT = auto()
    SETTING_DATE_RANGE = auto()
    REQUESTING = auto()
    RECEIVING = auto()
    CLOSING = auto()


StateChangeCallback = Callable[[SessionState, SessionState], None]
PhaseCallback = Callable[[TransferPhase], None]
PacketCallback = Callable[[bytes, int], None]


@dataclass(frozen=True)
class AuthResult:
    """Outcome of one authentication attempt."""

    authenticated: bool
    verdict: ResponseVerdict | None
    rationale: str
    response: bytes | None = None
    # False when there was no notify channel to verify against
    verified: bool = True


@dataclass(frozen=True)
class TransferResult:
    """Raw outcome of one download exchange."""

    data: bytes
    completed: bool
    packets: int
    eot_rule: str | None = None
    elapsed: float = 0.0

    @property
    def partial(self) -> bool:
        """True when the wait expired before an end-of-transmission signal."""
        return not self.completed


async def write_command(
    transport: BaseTransport,
    characteristic: CharacteristicInfo,
    data: bytes,
    label: str,
    confirm_delivery: bool = True,
) -> None:
    """
    Write one payload, converting any failure into TransportWriteFailed.

    Raises:
        TransportWriteFailed: If the transport raised or refused the write
    """
    try:
        ok = await transport.write(characteristic, data, confirm_delivery)
    except TransportError as e:
        raise TransportWriteFailed(f"Writing {label} failed", cause=e) from e
    if not ok:
        raise TransportWriteFailed(
            f"Writing {label} ({hex_dump(data)}) to {characteristic.uuid} was not accepted"
        )


class ExchangeChannel:
    """
    Write/notify primitive shared by downloads and the diagnostic probe.

    Only valid inside ``SessionEngine.exchange``.
    """

    def __init__(
        self,
        transport: BaseTransport,
        channels: ChannelPair,
        stream: NotificationStream,
    ) -> None:
        self._transport = transport
        self.channels = channels
        self.stream = stream

    async def send(self, command: Command, confirm_delivery: bool = True) -> None:
        logger.debug(f"Sending {command}")
        await write_command(
            self._transport,
            self.channels.write,
            command.opcode,
            command.label,
            confirm_delivery,
        )


class SessionEngine:
    """
    Protocol state machine over a BaseTransport.

    Sessions are explicit values: ``connect`` returns one and every other
    operation takes it as its first argument.
    """

    def __init__(
        self,
        transport: BaseTransport,
        dialect: Dialect = DIGIBLU,
        protocol: ProtocolConfig | None = None,
        connection: ConnectionConfig | None = None,
        eot_predicate: EndOfTransmissionPredicate | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            transport: Transport used for every exchange
            dialect: Opcodes, UUIDs and heuristics of the device family
            protocol: Timeouts and policies
            connection: Connection timeouts
            eot_predicate: Completion predicate overriding the dialect rules
        """
        self._transport = transport
        self._dialect = dialect
        self._protocol = protocol or ProtocolConfig()
        self._connection = connection or ConnectionConfig()
        self._resolver = ChannelResolver(dialect)
        self._classifier = ResponseClassifier(dialect)
        self._eot = eot_predicate or EndOfTransmissionDetector.for_dialect(dialect)
        self._state_callbacks: list[StateChangeCallback] = []
        self._phase_callbacks: list[PhaseCallback] = []

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        transport: BaseTransport,
        registry: DialectRegistry | None = None,
    ) -> "SessionEngine":
        """Build an engine for the dialect named in the configuration."""
        registry = registry or DialectRegistry(config.protocol.dialects_dir)
        return cls(
            transport,
            dialect=registry.get(config.protocol.dialect),
            protocol=config.protocol,
            connection=config.connection,
        )

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    def add_state_callback(self, callback: StateChangeCallback) -> None:
        """Add a callback for session state changes."""
        self._state_callbacks.append(callback)

    def remove_state_callback(self, callback: StateChangeCallback) -> None:
        if callback in self._state_callbacks:
            self._state_callbacks.remove(callback)

    def add_phase_callback(self, callback: PhaseCallback) -> None:
        """Add a callback for download phase changes."""
        self._phase_callbacks.append(callback)

    def remove_phase_callback(self, callback: PhaseCallback) -> None:
        if callback in self._phase_callbacks:
            self._phase_callbacks.remove(callback)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self, address: str) -> Session:
        """
        Connect, discover characteristics and bind channels.

        A device without a writable characteristic still yields a session,
        with ``channels=None``; operations on it fail with
        ChannelResolutionFailed.
        """
        await self._transport.connect(address, timeout=self._connection.connect_timeout)
        try:
            characteristics = await self._transport.discover_characteristics()
        except TransportError:
            await self._transport.disconnect()
            raise

        channels: ChannelPair | None
        try:
            channels = self._resolver.resolve(characteristics, require_notify=False)
        except ChannelResolutionFailed as e:
            logger.error(f"Channel resolution failed for {address}: {e.message}")
            channels = None

        session = Session(address=address, channels=channels, characteristics=characteristics)
        log_audit_event("connect", f"Connected to {address}", session.describe())
        return session

    async def disconnect(self, session: Session) -> None:
        """Tear down the connection and invalidate the session."""
        if session.closed:
            return
        if session.busy:
            logger.warning(f"Disconnecting while {session.active_operation} is in progress")
        try:
            await self._transport.disconnect()
        finally:
            session.closed = True
            session.authenticated = False
            session.channels = None
            self._set_state(session, SessionState.IDLE)
            log_audit_event("disconnect", f"Disconnected from {session.address}")

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(self, session: Session, password: str) -> AuthResult:
        """
        Send the credential and infer whether the device accepted it.

        Raises:
            AlreadyInProgress: If a download or authentication is running
            ChannelResolutionFailed: If the session has no write channel
            TransportWriteFailed: If the credential could not be written
        """
        self._check_open(session)
        channels = self._require_channels(session, require_notify=False)
        credential = password.encode("utf-8")

        with self._claim(session, "authenticate"):
            self._set_state(session, SessionState.AUTHENTICATING)
            try:
                if channels.notify is None:
                    result = await self._authenticate_unverified(channels, credential)
                else:
                    result = await self._authenticate_verified(channels, credential)
            except BaseException:
                session.authenticated = False
                self._set_state(session, SessionState.IDLE)
                raise

            session.authenticated = result.authenticated
            self._set_state(
                session,
                SessionState.AUTHENTICATED if result.authenticated else SessionState.IDLE,
            )

        log_audit_event(
            "authenticate",
            "Authentication succeeded" if result.authenticated else "Authentication failed",
            {
                "address": session.address,
                "verdict": result.verdict.value if result.verdict else None,
                "verified": result.verified,
                "rationale": result.rationale,
            },
        )
        return result

    async def _authenticate_verified(
        self, channels: ChannelPair, credential: bytes
    ) -> AuthResult:
        assert channels.notify is not None
        async with self._transport.subscribe(channels.notify) as stream:
            await write_command(self._transport, channels.write, credential, "credential")
            response = await self._first_response(stream, self._protocol.auth_timeout)

        classification = self._classifier.classify(response)
        if classification.ambiguous:
            logger.warning(f"Authentication ambiguous: {classification.rationale}")
        else:
            logger.info(
                f"Authentication verdict {classification.verdict.name}: {classification.rationale}"
            )

        return AuthResult(
            authenticated=classification.verdict.grants_access,
            verdict=classification.verdict,
            rationale=classification.rationale,
            response=response,
        )

    async def _authenticate_unverified(
        self, channels: ChannelPair, credential: bytes
    ) -> AuthResult:
        logger.warning("No notify characteristic; sending credential without confirmation")
        await write_command(self._transport, channels.write, credential, "credential")
        await asyncio.sleep(self._protocol.fire_and_forget_delay)

        optimistic = self._protocol.unverified_auth_policy == "optimistic"
        rationale = (
            "No notify channel: credential sent but the outcome cannot be verified; "
            f"policy '{self._protocol.unverified_auth_policy}' marks the session "
            f"{'authenticated' if optimistic else 'not authenticated'}"
        )
        logger.warning(rationale)
        return AuthResult(
            authenticated=optimistic,
            verdict=None,
            rationale=rationale,
            verified=False,
        )

    async def _first_response(
        self, stream: NotificationStream, timeout: float
    ) -> bytes | None:
        """First non-empty packet within ``timeout`` seconds, else None."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info(f"No authentication response within {timeout:.1f}s")
                return None
            packet = await stream.get(timeout=remaining)
            if packet is None:
                logger.info(f"No authentication response within {timeout:.1f}s")
                return None
            if packet:
                return packet

    def force_authenticated(self, session: Session, value: bool) -> None:
        """Override the authenticated flag for devices that never confirm."""
        self._check_open(session)
        if session.busy:
            raise AlreadyInProgress(
                f"Cannot change authentication while {session.active_operation} is in progress"
            )
        logger.warning(f"Authentication manually forced to {value}")
        session.authenticated = value
        self._set_state(
            session, SessionState.AUTHENTICATED if value else SessionState.IDLE
        )

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def download(
        self,
        session: Session,
        command: Command,
        date_range: DateRange | None = None,
        on_packet: PacketCallback | None = None,
    ) -> TransferResult:
        """
        Run one download exchange.

        Sends init, the optional date range and ``command``, then buffers
        every notified packet until the end-of-transmission predicate fires
        or the download timeout elapses. A timeout is not an error: the
        result is marked partial and keeps the bytes received.

        Raises:
            AlreadyInProgress: If another operation holds the session
            ChannelResolutionFailed: If there is no write or notify channel
            TransportWriteFailed: If a command write before close fails
        """
        self._check_open(session)
        if session.busy:
            raise AlreadyInProgress(
                f"Cannot start {command.label}: {session.active_operation} in progress"
            )
        if not session.authenticated:
            logger.warning("Session is not authenticated; the device may ignore the download")

        loop = asyncio.get_running_loop()
        started = loop.time()
        completed = False
        eot_rule: str | None = None

        self._emit_phase(TransferPhase.CONFIGURING_CHANNEL)
        try:
            async with self.exchange(session, "download") as channel:
                session.buffer.reset()
                self._set_state(session, SessionState.DOWNLOADING)

                self._emit_phase(TransferPhase.SENDING_INIT)
                await channel.send(self._dialect.command(INIT_SESSION))
                await asyncio.sleep(self._protocol.command_delay)

                if date_range is not None:
                    self._emit_phase(TransferPhase.SETTING_DATE_RANGE)
                    await channel.send(self._dialect.build_date_range_command(date_range))
                    await asyncio.sleep(self._protocol.command_delay)

                self._emit_phase(TransferPhase.REQUESTING)
                await channel.send(command)

                self._emit_phase(TransferPhase.RECEIVING)
                try:
                    eot_rule = await asyncio.wait_for(
                        self._receive(session, channel.stream, on_packet),
                        timeout=self._protocol.download_timeout,
                    )
                    completed = True
                    logger.info("End of transmission detected")
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Download wait of {self._protocol.download_timeout:.0f}s elapsed; "
                        f"finalizing with {len(session.buffer)} bytes"
                    )

                self._set_state(session, SessionState.CLOSING)
                self._emit_phase(TransferPhase.CLOSING)
                try:
                    await channel.send(self._dialect.command(CLOSE_SESSION))
                except TransportWriteFailed as e:
                    # Keep what was received
                    logger.warning(f"Close command failed, keeping {len(session.buffer)} bytes: {e}")
        finally:
            if session.state in (SessionState.DOWNLOADING, SessionState.CLOSING):
                self._set_state(session, SessionState.IDLE)

        return TransferResult(
            data=session.buffer.snapshot(),
            completed=completed,
            packets=session.buffer.packets,
            eot_rule=eot_rule,
            elapsed=loop.time() - started,
        )

    async def _receive(
        self,
        session: Session,
        stream: NotificationStream,
        on_packet: PacketCallback | None,
    ) -> str | None:
        """Buffer packets in arrival order until end of transmission."""
        while True:
            packet = await stream.get()
            if not packet:
                continue
            total = session.buffer.append(packet)
            logger.debug(f"Received {len(packet)} bytes, {total} buffered")
            if on_packet is not None:
                try:
                    on_packet(packet, total)
                except Exception as e:
                    logger.error(f"Packet callback error: {e}")
            if self._eot(packet, total):
                return getattr(self._eot, "last_rule", None)

    @asynccontextmanager
    async def exchange(self, session: Session, operation: str) -> AsyncIterator[ExchangeChannel]:
        """
        Hold the session exclusively with an open notification subscription.

        The subscription is cancelled exactly once when the block exits,
        however it exits.
        """
        self._check_open(session)
        channels = self._require_channels(session, require_notify=True)
        with self._claim(session, operation):
            assert channels.notify is not None
            async with self._transport.subscribe(channels.notify) as stream:
                yield ExchangeChannel(self._transport, channels, stream)

    # ------------------------------------------------------------------
    # Buffer and info
    # ------------------------------------------------------------------

    def buffer_info(self, session: Session) -> dict[str, Any]:
        """Size, hex preview and state of the transfer buffer."""
        return {
            "size": len(session.buffer),
            "packets": session.buffer.packets,
            "hex_preview": session.buffer.hex_preview(),
            "downloading": session.downloading,
        }

    def clear_buffer(self, session: Session) -> None:
        """Discard buffered bytes; refused while a download owns the buffer."""
        if session.downloading:
            raise AlreadyInProgress("Cannot clear the buffer during a download")
        session.buffer.reset()

    def device_info(self, session: Session) -> dict[str, Any]:
        """Summary of the connected device."""
        return {
            **session.describe(),
            "services": len({c.service_uuid for c in session.characteristics}),
            "characteristics": len(session.characteristics),
            "dialect": self._dialect.name,
            "transport": self._transport.get_info(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _claim(self, session: Session, operation: str) -> Iterator[None]:
        if session.busy:
            raise AlreadyInProgress(
                f"Cannot start {operation}: {session.active_operation} in progress"
            )
        session.active_operation = operation
        try:
            yield
        finally:
            session.active_operation = None

    def _require_channels(self, session: Session, require_notify: bool) -> ChannelPair:
        channels = session.channels
        if channels is None:
            raise ChannelResolutionFailed(
                f"No writable characteristic resolved for {session.address}"
            )
        if require_notify and channels.notify is None:
            raise ChannelResolutionFailed(
                f"No notify characteristic resolved for {session.address}"
            )
        return channels

    def _check_open(self, session: Session) -> None:
        if session.closed:
            raise SessionClosed(f"Session for {session.address} is closed")

    def _set_state(self, session: Session, new_state: SessionState) -> None:
        old_state = session.state
        session.state = new_state

        if old_state != new_state:
            logger.debug(f"Session state: {old_state.name} -> {new_state.name}")
            for callback in self._state_callbacks:
                try:
                    callback(old_state, new_state)
                except Exception as e:
                    logger.error(f"State callback error: {e}")

    def _emit_phase(self, phase: TransferPhase) -> None:
        for callback in self._phase_callbacks:
            try:
                callback(phase)
            except Exception as e:
                logger.error(f"Phase callback error: {e}")
