"""
Pytest configuration and fixtures for Tacho Link tests.
"""

import pytest
from pathlib import Path

from tacho_link.core.config import AppConfig, ProbeConfig, ProtocolConfig
from tacho_link.core.engine import SessionEngine
from tacho_link.download.storage import MemoryArtifactStore
from tacho_link.protocols.dialect import DIGIBLU, Dialect
from tacho_link.sim.mock_device import SimulatedTachograph, SimulationConfig
from tacho_link.transport.mock_transport import MockTransport


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Create test application configuration."""
    config = AppConfig()
    config.simulation_mode = True
    config.protocol.dialects_dir = str(tmp_path / "dialects")
    config.storage.output_dir = str(tmp_path / "downloads")
    config.logging.log_dir = str(tmp_path / "logs")
    return config


@pytest.fixture
def protocol_config() -> ProtocolConfig:
    """Protocol timing shrunk so the suite stays fast."""
    return ProtocolConfig(
        auth_timeout=0.2,
        download_timeout=1.0,
        command_delay=0.0,
        fire_and_forget_delay=0.0,
    )


@pytest.fixture
def probe_config() -> ProbeConfig:
    """Probe timing shrunk so the suite stays fast."""
    return ProbeConfig(response_window=0.1, inter_command_delay=0.0, settle_delay=0.0)


@pytest.fixture
def dialect() -> Dialect:
    """Default protocol dialect."""
    return DIGIBLU


@pytest.fixture
def simulation_config() -> SimulationConfig:
    """Create simulation configuration."""
    return SimulationConfig()


@pytest.fixture
def simulated_device(simulation_config: SimulationConfig) -> SimulatedTachograph:
    """Create simulated tachograph."""
    return SimulatedTachograph(simulation_config)


@pytest.fixture
def mock_transport(simulated_device: SimulatedTachograph) -> MockTransport:
    """Create mock transport wired to the simulated tachograph."""
    return MockTransport(peer=simulated_device)


@pytest.fixture
def engine(mock_transport: MockTransport, protocol_config: ProtocolConfig) -> SessionEngine:
    """Create session engine over the mock transport."""
    return SessionEngine(mock_transport, DIGIBLU, protocol=protocol_config)


@pytest.fixture
def memory_store() -> MemoryArtifactStore:
    """Create in-memory artifact store."""
    return MemoryArtifactStore()


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Create temporary directory for test files."""
    return tmp_path
