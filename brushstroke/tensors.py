"""Conversions between raw pixel data and the engine's image tensors.

Image tensors are float32, shape (1, H, W, 3), values in [0, 1].
"""

from __future__ import annotations

from typing import Union

import numpy as np
import torch
from PIL import Image

from brushstroke.errors import InvalidInputError


ImageLike = Union[Image.Image, np.ndarray]


def _as_pil(image: ImageLike) -> Image.Image:
    if isinstance(image, Image.Image):
        if image.width == 0 or image.height == 0:
            raise InvalidInputError(f"Source image has zero size: {image.size}")
        return image.convert("RGB")

    arr = np.asarray(image)
    if arr.ndim not in (2, 3) or (arr.ndim == 3 and arr.shape[2] not in (3, 4)):
        raise InvalidInputError(f"Expected an (H, W), (H, W, 3) or (H, W, 4) pixel array, got shape {arr.shape}")
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise InvalidInputError(f"Source image has zero size: {arr.shape[1]}x{arr.shape[0]}")
    arr = np.clip(arr, 0, 255).astype(np.uint8)
    # Canvas ImageData arrives as RGBA; alpha is dropped, not composited.
    return Image.fromarray(arr).convert("RGB")


def to_normalized_tensor(image: ImageLike, target_size: int, device: torch.device | str = "cpu") -> torch.Tensor:
    """Resize `image` to a square `target_size` and return a (1, H, W, 3) tensor in [0, 1]."""
    if int(target_size) < 1:
        raise InvalidInputError(f"target_size must be > 0, got {target_size}")
    size = int(target_size)
    img = _as_pil(image).resize((size, size), resample=Image.BILINEAR)
    arr = np.asarray(img, dtype=np.float32) / 255.0
    t = torch.from_numpy(arr).contiguous().unsqueeze(0)
    return t.to(device=device, dtype=torch.float32)


def _check_image_tensor(t: torch.Tensor) -> None:
    if t.dim() != 4 or t.shape[0] != 1 or t.shape[3] != 3:
        raise InvalidInputError(f"Expected an image tensor of shape (1, H, W, 3), got {tuple(t.shape)}")


def _to_uint8(t: torch.Tensor) -> np.ndarray:
    _check_image_tensor(t)
    arr = t.detach().cpu()[0].to(torch.float32).numpy()
    return np.clip(np.rint(arr * 255.0), 0, 255).astype(np.uint8)


def to_pixel_buffer(t: torch.Tensor) -> bytes:
    """Encode a (1, H, W, 3) tensor as row-major RGBA bytes with opaque alpha."""
    rgb = _to_uint8(t)
    h, w, _ = rgb.shape
    rgba = np.empty((h, w, 4), dtype=np.uint8)
    rgba[..., :3] = rgb
    rgba[..., 3] = 255
    return rgba.tobytes()


def to_pil_image(t: torch.Tensor) -> Image.Image:
    return Image.fromarray(_to_uint8(t))
