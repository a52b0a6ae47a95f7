"""Fog geometry engine for exploration maps."""

from .main import main
from .fog_calculation import (
    FogCalculationOptions,
    FogCalculator,
    FogResult,
    calculate,
    get_default_options,
)
from .errors import (
    CircuitOpenError,
    ConfigurationError,
    FogEngineError,
    GeometryOperationError,
    GeometryValidationError,
)

__all__ = [
    "main",
    "FogCalculationOptions",
    "FogCalculator",
    "FogResult",
    "calculate",
    "get_default_options",
    "CircuitOpenError",
    "ConfigurationError",
    "FogEngineError",
    "GeometryOperationError",
    "GeometryValidationError",
]
