"""Frozen VGG-style feature network with named layer taps.

Layers are named the way Keras names VGG19 (``block1_conv1`` ... ``block5_pool``)
so layer selections written for the browser model carry over unchanged. A conv
tap returns the activation *after* its ReLU, matching Keras' fused conv layers.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Protocol, Sequence, Tuple

import torch
import torch.nn as nn

from brushstroke.errors import ExtractionError, UnknownLayerError


VGG19_CFG: List[int | str] = [
    64,
    64,
    "M",
    128,
    128,
    "M",
    256,
    256,
    256,
    256,
    "M",
    512,
    512,
    512,
    512,
    "M",
    512,
    512,
    512,
    512,
    "M",
]

_RELU_SUFFIX = "_relu"


@dataclass(frozen=True)
class InputConvention:
    """How a [0, 1] image must be rescaled before the network sees it.

    This is a property of the pretrained weights, not of the engine.
    """

    scale: float = 1.0
    mean: Optional[Tuple[float, float, float]] = None
    std: Optional[Tuple[float, float, float]] = None

    def apply(self, x: torch.Tensor) -> torch.Tensor:
        """Apply to an (N, C, H, W) tensor."""
        if self.scale != 1.0:
            x = x * self.scale
        if self.mean is not None:
            x = x - torch.tensor(self.mean, dtype=x.dtype, device=x.device).view(1, -1, 1, 1)
        if self.std is not None:
            x = x / torch.tensor(self.std, dtype=x.dtype, device=x.device).view(1, -1, 1, 1)
        return x


# Keras VGG19 as converted for the browser: raw 0-255 pixels.
KERAS_VGG_INPUT = InputConvention(scale=255.0)
# torchvision VGG19_Weights: [0, 1] pixels with ImageNet normalization.
TORCHVISION_VGG_INPUT = InputConvention(
    scale=1.0,
    mean=(0.485, 0.456, 0.406),
    std=(0.229, 0.224, 0.225),
)


def build_vgg_features(
    cfg: Sequence[int | str] = VGG19_CFG,
    in_channels: int = 3,
    last_layer: Optional[str] = None,
) -> nn.Sequential:
    """Build a VGG.features-like Sequential with Keras-style module names.

    Module order matches torchvision's VGG.features (conv, relu, ..., maxpool), so
    a torchvision `state_dict` can be loaded through `load_features_state_dict`.
    If `last_layer` is given, the stack is cut right after that layer's output.
    """
    layers: "OrderedDict[str, nn.Module]" = OrderedDict()
    block = 1
    conv_in_block = 0
    for v in cfg:
        if v == "M":
            name = f"block{block}_pool"
            layers[name] = nn.MaxPool2d(kernel_size=2, stride=2)
            block += 1
            conv_in_block = 0
        else:
            out_channels = int(v)
            conv_in_block += 1
            name = f"block{block}_conv{conv_in_block}"
            layers[name] = nn.Conv2d(in_channels, out_channels, kernel_size=3, padding=1)
            layers[name + _RELU_SUFFIX] = nn.ReLU(inplace=False)
            in_channels = out_channels
        if name == last_layer:
            break
    else:
        if last_layer is not None:
            raise UnknownLayerError(last_layer, [n for n in layers if not n.endswith(_RELU_SUFFIX)])

    return nn.Sequential(layers)


def load_features_state_dict(features: nn.Sequential, state_dict: Mapping[str, torch.Tensor]) -> None:
    """Load weights keyed either by our layer names or by torchvision's indices.

    torchvision keys (``0.weight``, ``2.weight``, ...) are matched to our conv
    layers by position.
    """
    own_keys = set(features.state_dict().keys())
    if set(state_dict.keys()) == own_keys:
        features.load_state_dict(state_dict, strict=True)
        return

    try:
        src_indices = sorted({int(k.partition(".")[0]) for k in state_dict})
    except ValueError as e:
        raise ValueError("state_dict keys are neither layer names nor torchvision indices") from e
    convs = [name for name, m in features.named_children() if isinstance(m, nn.Conv2d)]
    if len(src_indices) < len(convs):
        raise ValueError(f"state_dict has {len(src_indices)} conv layers, network needs {len(convs)}")

    remapped: "OrderedDict[str, torch.Tensor]" = OrderedDict()
    for name, idx in zip(convs, src_indices):
        for param in ("weight", "bias"):
            remapped[f"{name}.{param}"] = state_dict[f"{idx}.{param}"]
    features.load_state_dict(remapped, strict=True)


class LayerTap(NamedTuple):
    """A named point in the network whose output can be extracted."""

    name: str
    index: int


class LayerNetwork(Protocol):
    def list_layer_names(self) -> List[str]: ...

    def get_layer_output(self, name: str) -> LayerTap: ...

    def build_extractor(self, layer_names: Sequence[str]) -> "FeatureExtractor": ...


class FeatureExtractor:
    """Sub-network exposing a fixed, ordered list of intermediate activations."""

    def __init__(self, network: "FrozenNetwork", taps: Sequence[LayerTap]) -> None:
        self._network = network
        self.taps: Tuple[LayerTap, ...] = tuple(taps)
        self._stop = max(t.index for t in self.taps) + 1
        self._want = {t.index for t in self.taps}

    @property
    def layer_names(self) -> List[str]:
        return [t.name for t in self.taps]

    def predict(self, image: torch.Tensor) -> List[torch.Tensor]:
        """Run a (1, H, W, 3) [0, 1] image and return one (1, h, w, d) map per tap, in order."""
        out: Dict[int, torch.Tensor] = {}
        try:
            h = self._network.prepare_input(image)
            for idx, layer in enumerate(self._network.features[: self._stop]):
                h = layer(h)
                if idx in self._want:
                    out[idx] = h
        except RuntimeError as e:
            raise ExtractionError(
                f"Forward pass failed for layers {self.layer_names} on input {tuple(image.shape)}: {e}"
            ) from e
        return [out[t.index].permute(0, 2, 3, 1) for t in self.taps]

    __call__ = predict


class FrozenNetwork:
    """Read-only wrapper over a named `nn.Sequential` feature stack.

    Extractors are cached per layer tuple; the cache is lock-guarded so several
    transfers may share one network.
    """

    def __init__(
        self,
        features: nn.Sequential,
        input_convention: InputConvention = KERAS_VGG_INPUT,
        channels_last: bool = False,
    ) -> None:
        features = features.eval()
        for p in features.parameters():
            p.requires_grad_(False)
        self.channels_last = channels_last
        if channels_last:
            features = features.to(memory_format=torch.channels_last)
        self.features = features
        self.input_convention = input_convention
        self._taps = self._tap_points(features)
        self._extractors: Dict[Tuple[str, ...], FeatureExtractor] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _tap_points(features: nn.Sequential) -> "OrderedDict[str, int]":
        taps: "OrderedDict[str, int]" = OrderedDict()
        for idx, (name, _) in enumerate(features.named_children()):
            if name.endswith(_RELU_SUFFIX) and name[: -len(_RELU_SUFFIX)] in taps:
                taps[name[: -len(_RELU_SUFFIX)]] = idx
            else:
                taps[name] = idx
        return taps

    @property
    def device(self) -> torch.device:
        for p in self.features.parameters():
            return p.device
        return torch.device("cpu")

    def list_layer_names(self) -> List[str]:
        return list(self._taps.keys())

    def get_layer_output(self, name: str) -> LayerTap:
        try:
            return LayerTap(name, self._taps[name])
        except KeyError:
            raise UnknownLayerError(name, self.list_layer_names()) from None

    def build_extractor(self, layer_names: Iterable[str]) -> FeatureExtractor:
        key = tuple(layer_names)
        if not key:
            raise ValueError("At least one layer name is required")
        with self._lock:
            extractor = self._extractors.get(key)
            if extractor is None:
                extractor = FeatureExtractor(self, [self.get_layer_output(n) for n in key])
                self._extractors[key] = extractor
        return extractor

    def prepare_input(self, image: torch.Tensor) -> torch.Tensor:
        """(1, H, W, 3) in [0, 1] -> (1, 3, H, W) in the network's input range."""
        x = self.input_convention.apply(image.permute(0, 3, 1, 2))
        if self.channels_last:
            return x.contiguous(memory_format=torch.channels_last)
        return x.contiguous()


def build_vgg19_network(
    state_dict: Optional[Mapping[str, torch.Tensor]] = None,
    last_layer: Optional[str] = "block5_conv4",
    input_convention: InputConvention = KERAS_VGG_INPUT,
    device: torch.device | str = "cpu",
    channels_last: bool = False,
) -> FrozenNetwork:
    """VGG19 feature stack, optionally truncated and loaded from an in-memory state_dict.

    Without a `state_dict` the weights are PyTorch's default init; seed torch first
    if the result must be reproducible.
    """
    features = build_vgg_features(VGG19_CFG, last_layer=last_layer)
    if state_dict is not None:
        load_features_state_dict(features, state_dict)
    return FrozenNetwork(features.to(device), input_convention=input_convention, channels_last=channels_last)
