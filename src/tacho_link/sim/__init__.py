"""Simulation components for testing without hardware."""

from tacho_link.sim.mock_device import SimulatedTachograph, SimulationConfig

__all__ = ["SimulatedTachograph", "SimulationConfig"]
