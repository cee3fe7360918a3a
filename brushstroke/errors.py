"""Exceptions raised by the style-transfer engine.

Every error aborts the current transfer; none are retried inside the engine.
"""

from __future__ import annotations

from typing import Optional, Sequence


class StyleTransferError(Exception):
    """Base class for all brushstroke errors."""


class InvalidInputError(StyleTransferError, ValueError):
    """Malformed or zero-dimension source image or tensor."""


class InvalidConfigError(StyleTransferError, ValueError):
    """A run or layer configuration value is out of range."""


class UnknownLayerError(StyleTransferError, KeyError):
    """A configured layer name is absent from the network."""

    def __init__(self, layer: str, available: Sequence[str] = ()) -> None:
        self.layer = layer
        self.available = tuple(available)
        super().__init__(layer)

    def __str__(self) -> str:
        msg = f"Unknown layer {self.layer!r}"
        if self.available:
            msg += f" (available: {', '.join(self.available)})"
        return msg


class ExtractionError(StyleTransferError, RuntimeError):
    """The network's forward pass failed."""


class OptimizationDivergedError(StyleTransferError, ArithmeticError):
    """The loss became NaN or infinite during a step."""

    def __init__(self, loss: float, epoch: int, step: Optional[int] = None) -> None:
        self.loss = loss
        self.epoch = epoch
        self.step = step
        where = f"epoch {epoch}" + (f", step {step}" if step is not None else "")
        super().__init__(f"Loss diverged to {loss} at {where}")
