"""
Operational status helpers built on top of the engine bus.
"""

from .metrics import EngineMetrics

__all__ = ["EngineMetrics"]
