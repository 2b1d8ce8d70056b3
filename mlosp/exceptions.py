"""
Exceptions raised by the optimal stopping engine.
"""

from typing import Optional


class OSPError(Exception):
    """Base class for all mlosp errors."""


class InvalidConfig(OSPError, ValueError):
    """Malformed or dimensionally inconsistent model configuration."""


class _StepError(OSPError):

    def __init__(self, message: str, step: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step is None:
            return self.message
        return f"step {self.step}: {self.message}"


class UnderdeterminedFit(_StepError):
    """Design too small or degenerate for the chosen regression method."""


class FitFailure(_StepError):
    """Numerical failure inside a regression fit."""
