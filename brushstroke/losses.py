from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import torch
import torch.nn.functional as F

from brushstroke.config import LossWeights
from brushstroke.vgg19_features import FeatureExtractor


@dataclass(frozen=True)
class LossTerms:
    style: torch.Tensor
    content: torch.Tensor
    tv: torch.Tensor
    total: torch.Tensor

    def as_floats(self) -> dict:
        return {
            "style": float(self.style.detach().cpu()),
            "content": float(self.content.detach().cpu()),
            "tv": float(self.tv.detach().cpu()),
            "total": float(self.total.detach().cpu()),
        }


def gram_matrix(feat: torch.Tensor) -> torch.Tensor:
    """Channel correlations of a (1, h, w, d) feature map, shape (1, d, d), divided by h*w."""
    n, h, w, d = feat.shape
    m = feat.permute(0, 3, 1, 2).reshape(n, d, h * w)
    g = torch.bmm(m, m.transpose(1, 2))
    return g / float(h * w)


def total_variation_loss(img: torch.Tensor) -> torch.Tensor:
    """Sum of absolute differences between neighbouring pixels of a (1, H, W, C) image."""
    dx = img[:, :, 1:, :] - img[:, :, :-1, :]
    dy = img[:, 1:, :, :] - img[:, :-1, :, :]
    return dx.abs().sum() + dy.abs().sum()


def style_outputs(extractor: FeatureExtractor, image: torch.Tensor) -> List[torch.Tensor]:
    return [gram_matrix(f) for f in extractor.predict(image)]


def content_outputs(extractor: FeatureExtractor, image: torch.Tensor) -> List[torch.Tensor]:
    return extractor.predict(image)


def compute_targets(
    style_extractor: FeatureExtractor,
    content_extractor: FeatureExtractor,
    style_img: torch.Tensor,
    content_img: torch.Tensor,
) -> Tuple[List[torch.Tensor], List[torch.Tensor]]:
    """Style Gram matrices and content feature maps for the fixed inputs.

    Computed once per transfer; the returned tensors are detached.
    """
    with torch.no_grad():
        style_targets = [g.detach() for g in style_outputs(style_extractor, style_img)]
        content_targets = [f.detach() for f in content_outputs(content_extractor, content_img)]
    return style_targets, content_targets


def _mean_mse(outputs: Sequence[torch.Tensor], targets: Sequence[torch.Tensor]) -> torch.Tensor:
    if len(outputs) != len(targets):
        raise ValueError(f"Got {len(outputs)} outputs for {len(targets)} targets")
    total = torch.zeros((), device=outputs[0].device)
    for out, target in zip(outputs, targets):
        total = total + F.mse_loss(out, target)
    return total / len(outputs)


def style_content_loss(
    image: torch.Tensor,
    style_targets: Sequence[torch.Tensor],
    content_targets: Sequence[torch.Tensor],
    style_extractor: FeatureExtractor,
    content_extractor: FeatureExtractor,
    weights: LossWeights,
) -> LossTerms:
    """Weighted style + content (+ total variation) loss of `image`.

    Style and content terms are averaged over their layers before weighting.
    Differentiable with respect to `image`.
    """
    style = _mean_mse(style_outputs(style_extractor, image), style_targets) * weights.style_weight
    content = _mean_mse(content_outputs(content_extractor, image), content_targets) * weights.content_weight
    if weights.tv_weight > 0:
        tv = total_variation_loss(image) * weights.tv_weight
    else:
        tv = torch.zeros((), device=image.device)
    return LossTerms(style=style, content=content, tv=tv, total=style + content + tv)
