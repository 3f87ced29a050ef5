"""
Tests for the session engine: authentication, download sequencing,
exclusivity and teardown.
"""

import asyncio
from dataclasses import replace
from datetime import datetime

import pytest

from tacho_link.core.config import ProtocolConfig
from tacho_link.core.engine import SessionEngine, TransferPhase
from tacho_link.core.errors import (
    AlreadyInProgress,
    ChannelResolutionFailed,
    SessionClosed,
    TransportWriteFailed,
)
from tacho_link.core.session import SessionState
from tacho_link.protocols.classifier import ResponseVerdict
from tacho_link.protocols.dialect import (
    DIGIBLU,
    DOWNLOAD_DRIVER_CARD,
    DOWNLOAD_VEHICLE_UNIT,
    DateRange,
)
from tacho_link.sim.mock_device import (
    AUTH_ACK,
    AUTH_ECHO,
    AUTH_REJECT,
    AUTH_SILENT,
    OP_CLOSE,
    OP_DOWNLOAD_VU,
    OP_INIT,
    SimulatedTachograph,
    SimulationConfig,
)
from tacho_link.transport.base import PROP_NOTIFY, PROP_WRITE, CharacteristicInfo, TransportError
from tacho_link.transport.mock_transport import NUS_NOTIFY, NUS_SERVICE, NUS_WRITE, MockTransport

DEVICE_ADDRESS = "AA:BB:CC:DD:EE:FF"

VU = DIGIBLU.command(DOWNLOAD_VEHICLE_UNIT)
CARD = DIGIBLU.command(DOWNLOAD_DRIVER_CARD)

FIRST_PACKET = bytes(range(0x10, 0x24))  # 20 bytes
LAST_PACKET = bytes([0x30, 0x31, 0x32, 0x33, 0x04])


def _engine_for(device: SimulatedTachograph, protocol: ProtocolConfig, **kwargs) -> tuple[SessionEngine, MockTransport]:
    transport = MockTransport(peer=device, **kwargs)
    return SessionEngine(transport, DIGIBLU, protocol=protocol), transport


class TestConnect:
    """Tests for connect / disconnect."""

    def test_connect_resolves_channels(self, engine: SessionEngine):
        """Test a session is created idle with both roles bound."""
        session = asyncio.run(engine.connect(DEVICE_ADDRESS))

        assert session.state is SessionState.IDLE
        assert not session.authenticated
        assert session.channels.write.uuid == NUS_WRITE
        assert session.channels.notify.uuid == NUS_NOTIFY

    def test_connect_without_write_role(self, protocol_config: ProtocolConfig):
        """Test a device with nothing writable yields a session without channels."""
        transport = MockTransport(
            characteristics=[CharacteristicInfo(NUS_SERVICE, NUS_NOTIFY, frozenset({PROP_NOTIFY}))]
        )
        engine = SessionEngine(transport, protocol=protocol_config)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            assert session.channels is None
            await engine.authenticate(session, "1234")

        with pytest.raises(ChannelResolutionFailed):
            asyncio.run(scenario())

    def test_connect_failure_propagates(self, engine: SessionEngine, mock_transport: MockTransport):
        """Test transport connection errors reach the caller."""
        mock_transport.fail_connect = True

        with pytest.raises(TransportError):
            asyncio.run(engine.connect(DEVICE_ADDRESS))

    def test_operations_after_disconnect(self, engine: SessionEngine):
        """Test a disconnected session refuses further work."""

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            await engine.disconnect(session)
            assert session.closed
            await engine.download(session, VU)

        with pytest.raises(SessionClosed):
            asyncio.run(scenario())


class TestAuthentication:
    """Tests for the authentication handshake."""

    @pytest.mark.parametrize(
        "mode,password",
        [("ok", "1234"), (AUTH_ACK, "1234"), (AUTH_ECHO, "123456")],
    )
    def test_accepted(self, protocol_config: ProtocolConfig, mode: str, password: str):
        """Test explicit acknowledgements authenticate the session."""
        device = SimulatedTachograph(SimulationConfig(password=password, auth_mode=mode))
        engine, transport = _engine_for(device, protocol_config)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return session, await engine.authenticate(session, password)

        session, result = asyncio.run(scenario())

        assert result.verdict is ResponseVerdict.ACCEPTED
        assert result.authenticated
        assert session.authenticated
        assert session.state is SessionState.AUTHENTICATED
        assert transport.get_sent_payloads() == [password.encode("utf-8")]
        assert transport.notify_toggles == [(NUS_NOTIFY, True), (NUS_NOTIFY, False)]
        assert not transport.has_subscription(session.channels.notify)

    def test_rejected(self, protocol_config: ProtocolConfig):
        """Test an error byte leaves the session idle and unauthenticated."""
        device = SimulatedTachograph(SimulationConfig(auth_mode=AUTH_REJECT))
        engine, _ = _engine_for(device, protocol_config)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return session, await engine.authenticate(session, "1234")

        session, result = asyncio.run(scenario())

        assert result.verdict is ResponseVerdict.REJECTED
        assert result.response == b"\xff"
        assert not session.authenticated
        assert session.state is SessionState.IDLE

    def test_wrong_password(self, engine: SessionEngine):
        """Test a wrong password is rejected by the default device."""

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return await engine.authenticate(session, "9999")

        assert asyncio.run(scenario()).verdict is ResponseVerdict.REJECTED

    def test_silent_device_assumed_authenticated(self, protocol_config: ProtocolConfig):
        """Test no response within the window is treated as success."""
        device = SimulatedTachograph(SimulationConfig(auth_mode=AUTH_SILENT))
        engine, transport = _engine_for(device, protocol_config)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return session, await engine.authenticate(session, "1234")

        session, result = asyncio.run(scenario())

        assert result.verdict is ResponseVerdict.AMBIGUOUS_ASSUME_SUCCESS
        assert "may not confirm" in result.rationale
        assert result.response is None
        assert session.authenticated
        assert session.state is SessionState.AUTHENTICATED
        assert transport.notify_toggles == [(NUS_NOTIFY, True), (NUS_NOTIFY, False)]
        assert not transport.has_subscription(session.channels.notify)

    def test_silent_device_with_strict_dialect(self, protocol_config: ProtocolConfig):
        """Test a strict dialect turns silence into a TIMEOUT verdict."""
        device = SimulatedTachograph(SimulationConfig(auth_mode=AUTH_SILENT))
        transport = MockTransport(peer=device)
        strict = replace(DIGIBLU, assume_success_on_timeout=False)
        engine = SessionEngine(transport, strict, protocol=protocol_config)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return session, await engine.authenticate(session, "1234")

        session, result = asyncio.run(scenario())

        assert result.verdict is ResponseVerdict.TIMEOUT
        assert not session.authenticated
        assert session.state is SessionState.IDLE

    def test_empty_notifications_ignored(self, protocol_config: ProtocolConfig):
        """Test empty packets do not count as the response."""
        device = SimulatedTachograph(
            SimulationConfig(extra_replies={b"1234": [b"", b"OK"]})
        )
        engine, _ = _engine_for(device, protocol_config)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return await engine.authenticate(session, "1234")

        result = asyncio.run(scenario())
        assert result.verdict is ResponseVerdict.ACCEPTED
        assert result.response == b"OK"

    @pytest.mark.parametrize("policy,expected", [("pessimistic", False), ("optimistic", True)])
    def test_without_notify_channel(self, policy: str, expected: bool):
        """Test fire-and-forget authentication follows the configured policy."""
        transport = MockTransport(
            characteristics=[CharacteristicInfo(NUS_SERVICE, NUS_WRITE, frozenset({PROP_WRITE}))]
        )
        protocol = ProtocolConfig(fire_and_forget_delay=0.0, unverified_auth_policy=policy)
        engine = SessionEngine(transport, protocol=protocol)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return session, await engine.authenticate(session, "1234")

        session, result = asyncio.run(scenario())

        assert not result.verified
        assert result.verdict is None
        assert result.authenticated is expected
        assert session.authenticated is expected
        assert transport.get_sent_payloads() == [b"1234"]
        assert transport.notify_toggles == []

    def test_credential_write_failure(self, engine: SessionEngine, mock_transport: MockTransport):
        """Test a refused credential write raises and resets the state."""
        mock_transport.fail_writes_on.add(b"1234")

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            with pytest.raises(TransportWriteFailed):
                await engine.authenticate(session, "1234")
            return session

        session = asyncio.run(scenario())
        assert session.state is SessionState.IDLE
        assert not session.authenticated
        assert not session.busy

    def test_force_authenticated(self, engine: SessionEngine):
        """Test the manual override."""

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            engine.force_authenticated(session, True)
            return session

        session = asyncio.run(scenario())
        assert session.authenticated
        assert session.state is SessionState.AUTHENTICATED


class TestDownload:
    """Tests for the download sequence."""

    def test_twenty_plus_five_bytes(self, protocol_config: ProtocolConfig):
        """Test a 20 byte packet followed by a 5 byte packet ending in 0x04."""
        device = SimulatedTachograph(
            SimulationConfig(extra_replies={OP_DOWNLOAD_VU: [FIRST_PACKET, LAST_PACKET]})
        )
        engine, transport = _engine_for(device, protocol_config)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            await engine.authenticate(session, "1234")
            return session, await engine.download(session, VU)

        session, result = asyncio.run(scenario())

        assert result.data == FIRST_PACKET + LAST_PACKET
        assert len(result.data) == 25
        assert result.completed
        assert not result.partial
        assert result.packets == 2
        assert result.eot_rule == "eot-marker"
        assert transport.get_sent_payloads() == [b"1234", OP_INIT, OP_DOWNLOAD_VU, OP_CLOSE]
        assert session.state is SessionState.IDLE
        assert session.authenticated

    def test_full_vehicle_unit(self, engine: SessionEngine, simulated_device: SimulatedTachograph):
        """Test a multi-packet download is reassembled in order."""

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            await engine.authenticate(session, "1234")
            return await engine.download(session, VU)

        result = asyncio.run(scenario())
        expected = simulated_device.payload_for(OP_DOWNLOAD_VU)

        assert result.completed
        assert result.data[:-1] == expected
        assert result.data[-1] == 0x04

    def test_driver_card(self, engine: SessionEngine, simulated_device: SimulatedTachograph):
        """Test driver card download uses its own opcode."""

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return await engine.download(session, CARD)

        result = asyncio.run(scenario())

        assert result.completed
        assert len(result.data) == simulated_device.config.driver_card_size + 1

    def test_date_range_sent_between_init_and_command(
        self, engine: SessionEngine, mock_transport: MockTransport, simulated_device: SimulatedTachograph
    ):
        """Test the optional date filter is written after init."""
        date_range = DateRange(datetime(2024, 1, 1), datetime(2024, 1, 31, 23, 59, 59))

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return await engine.download(session, VU, date_range=date_range)

        asyncio.run(scenario())
        sent = mock_transport.get_sent_payloads()

        assert sent[0] == OP_INIT
        assert sent[1] == bytes([0x83, 0x00, 24, 1, 1, 0, 0, 0, 24, 1, 31, 23, 59, 59])
        assert sent[2] == OP_DOWNLOAD_VU
        assert sent[-1] == OP_CLOSE
        assert simulated_device.date_range == (date_range.start, date_range.end)

    def test_timeout_keeps_partial_buffer(self):
        """Test a missing end marker yields a partial result, not an error."""
        device = SimulatedTachograph(
            SimulationConfig(vehicle_unit_size=100, append_eot=False)
        )
        engine, transport = _engine_for(
            device, ProtocolConfig(command_delay=0.0, download_timeout=0.3)
        )

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return session, await engine.download(session, VU)

        session, result = asyncio.run(scenario())

        assert result.partial
        assert result.data == device.payload_for(OP_DOWNLOAD_VU)
        assert transport.get_sent_payloads()[-1] == OP_CLOSE
        assert session.state is SessionState.IDLE
        assert transport.notify_toggles == [(NUS_NOTIFY, True), (NUS_NOTIFY, False)]
        assert not transport.has_subscription(session.channels.notify)

    def test_empty_packets_skipped(self, protocol_config: ProtocolConfig):
        """Test empty notifications are not buffered."""
        device = SimulatedTachograph(
            SimulationConfig(extra_replies={OP_DOWNLOAD_VU: [b"", FIRST_PACKET, b"", LAST_PACKET]})
        )
        engine, _ = _engine_for(device, protocol_config)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return await engine.download(session, VU)

        result = asyncio.run(scenario())
        assert result.packets == 2
        assert len(result.data) == 25

    def test_state_and_phase_sequence(self, engine: SessionEngine):
        """Test state transitions and phases of an authenticated download."""
        states: list[tuple[SessionState, SessionState]] = []
        phases: list[TransferPhase] = []
        engine.add_state_callback(lambda old, new: states.append((old, new)))
        engine.add_phase_callback(phases.append)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            await engine.authenticate(session, "1234")
            await engine.download(session, VU)

        asyncio.run(scenario())

        assert states == [
            (SessionState.IDLE, SessionState.AUTHENTICATING),
            (SessionState.AUTHENTICATING, SessionState.AUTHENTICATED),
            (SessionState.AUTHENTICATED, SessionState.DOWNLOADING),
            (SessionState.DOWNLOADING, SessionState.CLOSING),
            (SessionState.CLOSING, SessionState.IDLE),
        ]
        assert phases == [
            TransferPhase.CONFIGURING_CHANNEL,
            TransferPhase.SENDING_INIT,
            TransferPhase.REQUESTING,
            TransferPhase.RECEIVING,
            TransferPhase.CLOSING,
        ]

    def test_packet_callback_reports_totals(self, protocol_config: ProtocolConfig):
        """Test the packet callback receives the running byte count."""
        device = SimulatedTachograph(
            SimulationConfig(extra_replies={OP_DOWNLOAD_VU: [FIRST_PACKET, LAST_PACKET]})
        )
        engine, _ = _engine_for(device, protocol_config)
        totals: list[int] = []

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            await engine.download(session, VU, on_packet=lambda packet, total: totals.append(total))

        asyncio.run(scenario())
        assert totals == [20, 25]

    def test_buffer_reset_per_download(self, protocol_config: ProtocolConfig):
        """Test each download starts from an empty buffer."""
        device = SimulatedTachograph(
            SimulationConfig(extra_replies={OP_DOWNLOAD_VU: [FIRST_PACKET, LAST_PACKET]})
        )
        engine, _ = _engine_for(device, protocol_config)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            await engine.download(session, VU)
            return await engine.download(session, VU)

        assert len(asyncio.run(scenario()).data) == 25

    def test_buffer_info_and_clear(self, protocol_config: ProtocolConfig):
        """Test buffer inspection and explicit clearing."""
        device = SimulatedTachograph(
            SimulationConfig(extra_replies={OP_DOWNLOAD_VU: [FIRST_PACKET, LAST_PACKET]})
        )
        engine, _ = _engine_for(device, protocol_config)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            await engine.download(session, VU)
            info = engine.buffer_info(session)
            engine.clear_buffer(session)
            return info, engine.buffer_info(session)

        before, after = asyncio.run(scenario())

        assert before["size"] == 25
        assert before["hex_preview"].startswith("10 11 12")
        assert not before["downloading"]
        assert after["size"] == 0


class TestFailures:
    """Tests for write failures and teardown."""

    def test_write_failure_aborts_and_unsubscribes(
        self, engine: SessionEngine, mock_transport: MockTransport
    ):
        """Test a refused command write aborts the sequence cleanly."""
        mock_transport.fail_writes_on.add(OP_DOWNLOAD_VU)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            with pytest.raises(TransportWriteFailed):
                await engine.download(session, VU)
            return session

        session = asyncio.run(scenario())

        assert session.state is SessionState.IDLE
        assert not session.busy
        assert mock_transport.notify_toggles == [(NUS_NOTIFY, True), (NUS_NOTIFY, False)]
        assert OP_CLOSE not in mock_transport.get_sent_payloads()

    def test_close_failure_keeps_transfer(
        self,
        engine: SessionEngine,
        mock_transport: MockTransport,
        simulated_device: SimulatedTachograph,
    ):
        """Test a refused close command still returns the received data."""
        mock_transport.fail_writes_on.add(OP_CLOSE)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            return session, await engine.download(session, VU)

        session, result = asyncio.run(scenario())

        assert result.completed
        assert result.data == simulated_device.payload_for(OP_DOWNLOAD_VU) + b"\x04"
        assert mock_transport.get_sent_payloads()[-1] == OP_CLOSE
        assert session.state is SessionState.IDLE
        assert not session.busy
        assert mock_transport.notify_toggles == [(NUS_NOTIFY, True), (NUS_NOTIFY, False)]

    def test_write_failure_raises(self, engine: SessionEngine, mock_transport: MockTransport):
        """Test the failure surfaces as TransportWriteFailed."""
        mock_transport.raise_on_write = TransportError(message="link lost", code="WRITE_FAILED")

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            await engine.download(session, VU)

        with pytest.raises(TransportWriteFailed) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.cause is not None

    def test_subscription_cancelled_once(self, engine: SessionEngine, mock_transport: MockTransport):
        """Test a successful download enables and disables notify exactly once."""

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            await engine.download(session, VU)
            return session

        session = asyncio.run(scenario())

        assert mock_transport.notify_toggles == [(NUS_NOTIFY, True), (NUS_NOTIFY, False)]
        assert not mock_transport.has_subscription(session.channels.notify)

    def test_download_requires_notify(self):
        """Test downloads refuse a session without a notify role."""
        transport = MockTransport(
            characteristics=[CharacteristicInfo(NUS_SERVICE, NUS_WRITE, frozenset({PROP_WRITE}))]
        )
        engine = SessionEngine(transport)

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            await engine.download(session, VU)

        with pytest.raises(ChannelResolutionFailed):
            asyncio.run(scenario())
        assert transport.get_sent_payloads() == []


class TestExclusivity:
    """Tests for the single-operation guard."""

    @pytest.fixture
    def stalled_engine(self) -> tuple[SessionEngine, MockTransport]:
        device = SimulatedTachograph(SimulationConfig(extra_replies={OP_DOWNLOAD_VU: []}))
        return _engine_for(device, ProtocolConfig(command_delay=0.0, download_timeout=0.5))

    def test_second_download_refused(self, stalled_engine):
        """Test a concurrent download is refused without touching state."""
        engine, transport = stalled_engine

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            first = asyncio.create_task(engine.download(session, VU))
            await asyncio.sleep(0.05)
            session.buffer.append(b"\x42")
            with pytest.raises(AlreadyInProgress):
                await engine.download(session, CARD)
            assert session.state is SessionState.DOWNLOADING
            assert len(session.buffer) == 1
            await first
            return session

        session = asyncio.run(scenario())
        assert session.state is SessionState.IDLE
        assert transport.get_sent_payloads().count(OP_INIT) == 1

    def test_authenticate_during_download_refused(self, stalled_engine):
        """Test authentication cannot interleave with a download."""
        engine, _ = stalled_engine

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            first = asyncio.create_task(engine.download(session, VU))
            await asyncio.sleep(0.05)
            with pytest.raises(AlreadyInProgress):
                await engine.authenticate(session, "1234")
            with pytest.raises(AlreadyInProgress):
                engine.clear_buffer(session)
            await first

        asyncio.run(scenario())

    def test_concurrent_authentication_refused(self):
        """Test a second authentication cannot start while one waits."""
        device = SimulatedTachograph(SimulationConfig(auth_mode=AUTH_SILENT))
        engine, _ = _engine_for(device, ProtocolConfig(auth_timeout=0.3))

        async def scenario():
            session = await engine.connect(DEVICE_ADDRESS)
            first = asyncio.create_task(engine.authenticate(session, "1234"))
            await asyncio.sleep(0.05)
            assert session.state is SessionState.AUTHENTICATING
            with pytest.raises(AlreadyInProgress):
                await engine.authenticate(session, "1234")
            return await first

        assert asyncio.run(scenario()).authenticated
