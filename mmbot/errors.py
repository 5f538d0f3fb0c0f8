"""
Exception types raised by the mmbot pricing engine.

Insufficient balance and an inactive bot are normal plan states and are
reported on the DeploymentPlan, not raised.
"""


class EngineError(ValueError):
    """Base class for all engine errors."""


class InvalidInput(EngineError):
    """Malformed, negative or non-finite numeric input. The whole operation is rejected."""


class InvalidOperation(EngineError):
    """Operation not allowed in the current state (e.g. removing the last curve point)."""


class InvariantViolation(EngineError):
    """Weights or budgets do not sum to their target within tolerance."""
