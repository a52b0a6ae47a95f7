"""Central error types used across the fog engine."""

from __future__ import annotations


class FogEngineError(RuntimeError):
    """Base error for fog engine failures."""


class GeometryValidationError(FogEngineError):
    """Raised when a geometry is malformed and cannot be repaired."""


class GeometryOperationError(FogEngineError):
    """Raised when a boolean geometry routine fails or yields unusable output."""

    def __init__(
        self,
        message: str,
        operation: str,
        *,
        geometry_type: str | None = None,
        fallback_used: bool = False,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.geometry_type = geometry_type
        self.fallback_used = fallback_used


class ConfigurationError(FogEngineError):
    """Raised when the caller supplies invalid viewport bounds or options."""


class CircuitOpenError(FogEngineError):
    """Raised when a circuit breaker is OPEN and fails fast."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker {name} is OPEN - failing fast")
        self.name = name


__all__ = [
    "FogEngineError",
    "GeometryValidationError",
    "GeometryOperationError",
    "ConfigurationError",
    "CircuitOpenError",
]
