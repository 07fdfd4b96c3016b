"""Exception hierarchy for the forecasting engines."""


class AffectDynamicsError(Exception):
    """Base class for all errors raised by affect_dynamics."""


class InvalidDimensionError(AffectDynamicsError, ValueError):
    """A vector or matrix does not match the configured dimensionality."""

    def __init__(self, name: str, expected, actual):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(f"{name} must have dimension {expected}, got {actual}")


class NotInitializedError(AffectDynamicsError, RuntimeError):
    """An engine was used before initialize() or load_weights()."""

    def __init__(self, engine: str):
        self.engine = engine
        super().__init__(f"{engine} is not initialized. Call initialize() or load_weights() first")


class TrainingError(AffectDynamicsError, ValueError):
    """Training input was rejected before any weights were modified."""
