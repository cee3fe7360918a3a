from __future__ import annotations

import pytest
import torch

from brushstroke.vgg19_features import KERAS_VGG_INPUT, FrozenNetwork, build_vgg_features

# Same block layout as VGG19 (2, 2, 2, 2, 2 convs here) with tiny channel counts.
SMALL_CFG = [4, 4, "M", 8, 8, "M", 8, 8, "M", 8, 8, "M", 8, 8, "M"]


@pytest.fixture
def small_network() -> FrozenNetwork:
    torch.manual_seed(0)
    return FrozenNetwork(build_vgg_features(SMALL_CFG), input_convention=KERAS_VGG_INPUT)


@pytest.fixture
def identity_network() -> FrozenNetwork:
    """block1_conv1 passes RGB through unchanged (then ReLU); block2_conv1 is random."""
    torch.manual_seed(0)
    features = build_vgg_features([3, "M", 4, "M"])
    with torch.no_grad():
        conv = features.block1_conv1
        conv.weight.zero_()
        conv.bias.zero_()
        for c in range(3):
            conv.weight[c, c, 1, 1] = 1.0
    return FrozenNetwork(features, input_convention=KERAS_VGG_INPUT)


@pytest.fixture
def gray_image() -> torch.Tensor:
    return torch.full((1, 32, 32, 3), 0.5)


@pytest.fixture
def patterned_image() -> torch.Tensor:
    gen = torch.Generator().manual_seed(1)
    return torch.rand((1, 32, 32, 3), generator=gen)


@pytest.fixture
def blue_image() -> torch.Tensor:
    img = torch.zeros((1, 32, 32, 3))
    img[..., 2] = 1.0
    return img
