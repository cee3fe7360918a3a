from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Tuple

from brushstroke.errors import InvalidConfigError


DEFAULT_CONTENT_LAYERS: Tuple[str, ...] = ("block5_conv2",)
DEFAULT_STYLE_LAYERS: Tuple[str, ...] = (
    "block1_conv1",
    "block2_conv1",
    "block3_conv1",
    "block4_conv1",
    "block5_conv1",
)

OPTIMIZER_KINDS = ("adam", "sgd")
INIT_MODES = ("content", "noise")


@dataclass(frozen=True)
class LayerSpec:
    """Ordered content and style layer names.

    Order matters: extracted activations are zipped against targets by position.
    """

    content_layers: Tuple[str, ...] = DEFAULT_CONTENT_LAYERS
    style_layers: Tuple[str, ...] = DEFAULT_STYLE_LAYERS

    def __post_init__(self) -> None:
        object.__setattr__(self, "content_layers", tuple(self.content_layers))
        object.__setattr__(self, "style_layers", tuple(self.style_layers))
        if not self.content_layers:
            raise InvalidConfigError("content_layers must not be empty")
        if not self.style_layers:
            raise InvalidConfigError("style_layers must not be empty")
        for name, layers in (("content_layers", self.content_layers), ("style_layers", self.style_layers)):
            if len(set(layers)) != len(layers):
                raise InvalidConfigError(f"{name} contains duplicates: {layers}")
        overlap = set(self.content_layers) & set(self.style_layers)
        if overlap:
            raise InvalidConfigError(f"content and style layers must be disjoint, both contain {sorted(overlap)}")


@dataclass(frozen=True)
class LossWeights:
    """Per-run loss weights. `tv_weight=0` disables the total-variation term."""

    style_weight: float = 1e-2
    content_weight: float = 1e3
    tv_weight: float = 0.0

    def __post_init__(self) -> None:
        for name in ("style_weight", "content_weight", "tv_weight"):
            if float(getattr(self, name)) < 0:
                raise InvalidConfigError(f"{name} must be >= 0")


@dataclass(frozen=True)
class OptimizerConfig:
    """Update rule for the synthesized image.

    The adam defaults are the ones the browser version shipped with; the large
    epsilon damps steps on pixels whose gradient is near zero.
    """

    kind: str = "adam"
    learning_rate: float = 0.02
    beta1: float = 0.99
    beta2: float = 0.999
    epsilon: float = 0.1
    momentum: float = 0.0

    def __post_init__(self) -> None:
        if self.kind not in OPTIMIZER_KINDS:
            raise InvalidConfigError(f"optimizer kind must be one of {OPTIMIZER_KINDS}, got {self.kind!r}")
        if float(self.learning_rate) <= 0:
            raise InvalidConfigError("learning_rate must be > 0")
        if not (0.0 <= self.beta1 < 1.0 and 0.0 <= self.beta2 < 1.0):
            raise InvalidConfigError("beta1 and beta2 must be in [0, 1)")
        if float(self.epsilon) <= 0:
            raise InvalidConfigError("epsilon must be > 0")
        if float(self.momentum) < 0:
            raise InvalidConfigError("momentum must be >= 0")


@dataclass(frozen=True)
class TransferConfig:
    """Everything one transfer run needs besides the two images and the network."""

    image_size: int = 224
    epochs: int = 10
    steps_per_epoch: int = 1
    layers: LayerSpec = field(default_factory=LayerSpec)
    weights: LossWeights = field(default_factory=LossWeights)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    init: str = "content"
    seed: int = 0

    def __post_init__(self) -> None:
        if int(self.image_size) < 1:
            raise InvalidConfigError("image_size must be >= 1")
        if int(self.epochs) < 1:
            raise InvalidConfigError("epochs must be >= 1")
        if int(self.steps_per_epoch) < 1:
            raise InvalidConfigError("steps_per_epoch must be >= 1")
        if self.init not in INIT_MODES:
            raise InvalidConfigError(f"init must be one of {INIT_MODES}, got {self.init!r}")

    @property
    def total_steps(self) -> int:
        return int(self.epochs) * int(self.steps_per_epoch)

    def with_overrides(self, **changes) -> "TransferConfig":
        return dataclasses.replace(self, **changes)
