"""Optimization loop: repeatedly nudges the synthesized image toward the targets."""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Union

import torch
import torch.nn as nn

from brushstroke.config import OptimizerConfig, TransferConfig
from brushstroke.errors import InvalidInputError, OptimizationDivergedError
from brushstroke.losses import LossTerms, compute_targets, style_content_loss
from brushstroke.tensors import ImageLike, to_normalized_tensor, to_pixel_buffer
from brushstroke.vgg19_features import FeatureExtractor, LayerNetwork

logger = logging.getLogger(__name__)


class TransferState(enum.Enum):
    INITIALIZING = "initializing"
    STEPPING = "stepping"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True, eq=False)
class ProgressEvent:
    """Emitted after every epoch. `progress == 100` marks the final image."""

    progress: float
    epoch: int
    image: torch.Tensor
    loss: Dict[str, float] = field(default_factory=dict)

    @property
    def done(self) -> bool:
        return self.progress >= 100.0

    def pixels(self) -> bytes:
        return to_pixel_buffer(self.image)


def build_optimizer(params: List[nn.Parameter], cfg: OptimizerConfig) -> torch.optim.Optimizer:
    if cfg.kind == "adam":
        return torch.optim.Adam(params, lr=cfg.learning_rate, betas=(cfg.beta1, cfg.beta2), eps=cfg.epsilon)
    if cfg.kind == "sgd":
        return torch.optim.SGD(params, lr=cfg.learning_rate, momentum=cfg.momentum)
    raise ValueError(f"Unsupported optimizer kind {cfg.kind!r}")


class StyleTransfer:
    """One style-transfer engine bound to a frozen network and a run config.

    The extractors are built (or fetched from the network's cache) here, so bad
    layer names fail before any image is touched. An instance drives one run at a
    time; use separate instances for concurrent runs.
    """

    def __init__(self, network: LayerNetwork, config: Optional[TransferConfig] = None) -> None:
        self.network = network
        self.config = config or TransferConfig()
        self.style_extractor: FeatureExtractor = network.build_extractor(self.config.layers.style_layers)
        self.content_extractor: FeatureExtractor = network.build_extractor(self.config.layers.content_layers)
        self.state = TransferState.INITIALIZING

    @property
    def device(self) -> torch.device:
        return getattr(self.network, "device", torch.device("cpu"))

    def _as_tensor(self, image: Union[ImageLike, torch.Tensor]) -> torch.Tensor:
        if isinstance(image, torch.Tensor):
            if image.dim() != 4 or image.shape[0] != 1 or image.shape[3] != 3 or 0 in image.shape:
                raise InvalidInputError(f"Expected an image tensor of shape (1, H, W, 3), got {tuple(image.shape)}")
            return image.detach().to(device=self.device, dtype=torch.float32).clamp(0.0, 1.0)
        return to_normalized_tensor(image, self.config.image_size, device=self.device)

    def _initial_image(self, content: torch.Tensor) -> torch.Tensor:
        if self.config.init == "noise":
            gen = torch.Generator().manual_seed(int(self.config.seed))
            return torch.rand(content.shape, generator=gen, dtype=content.dtype).to(content.device)
        return content.clone()

    def loss(self, image: torch.Tensor, style_targets, content_targets) -> LossTerms:
        return style_content_loss(
            image,
            style_targets,
            content_targets,
            self.style_extractor,
            self.content_extractor,
            self.config.weights,
        )

    def run(
        self,
        content: Union[ImageLike, torch.Tensor],
        style: Union[ImageLike, torch.Tensor],
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[ProgressEvent]:
        """Yield one `ProgressEvent` per epoch, ending with progress 100.

        `cancel` is checked between steps; once set, the generator stops without
        emitting further events. Any error moves the state to FAILED and propagates.
        """
        cfg = self.config
        self.state = TransferState.INITIALIZING
        try:
            content_img = self._as_tensor(content)
            style_img = self._as_tensor(style)
            style_targets, content_targets = compute_targets(
                self.style_extractor, self.content_extractor, style_img, content_img
            )

            x = nn.Parameter(self._initial_image(content_img).detach())
            opt = build_optimizer([x], cfg.optimizer)
            logger.info(
                "Starting transfer: size=%s epochs=%d steps_per_epoch=%d optimizer=%s lr=%s",
                tuple(content_img.shape[1:3]),
                cfg.epochs,
                cfg.steps_per_epoch,
                cfg.optimizer.kind,
                cfg.optimizer.learning_rate,
            )

            self.state = TransferState.STEPPING
            t0 = time.time()
            step = 0
            for epoch in range(1, cfg.epochs + 1):
                terms: Optional[LossTerms] = None
                for _ in range(cfg.steps_per_epoch):
                    if cancel is not None and cancel.is_set():
                        self.state = TransferState.CANCELLED
                        logger.warning("Transfer cancelled at epoch %d, step %d", epoch, step)
                        return
                    step += 1
                    terms = self._step(x, opt, style_targets, content_targets, epoch, step)

                assert terms is not None
                progress = 100.0 * epoch / cfg.epochs
                if epoch == cfg.epochs:
                    self.state = TransferState.DONE
                losses = terms.as_floats()
                logger.info(
                    "Epoch %d/%d done: loss=%.4f t=%.2fs", epoch, cfg.epochs, losses["total"], time.time() - t0
                )
                yield ProgressEvent(progress=progress, epoch=epoch, image=x.detach().clone(), loss=losses)
        except GeneratorExit:
            if self.state is not TransferState.DONE:
                self.state = TransferState.CANCELLED
            raise
        except Exception:
            self.state = TransferState.FAILED
            raise

    def _step(
        self,
        x: nn.Parameter,
        opt: torch.optim.Optimizer,
        style_targets: List[torch.Tensor],
        content_targets: List[torch.Tensor],
        epoch: int,
        step: int,
    ) -> LossTerms:
        opt.zero_grad(set_to_none=True)
        terms = self.loss(x, style_targets, content_targets)
        loss = terms.total
        if not bool(torch.isfinite(loss.detach())):
            logger.warning("Loss is %s at epoch %d, step %d; aborting", float(loss.detach()), epoch, step)
            raise OptimizationDivergedError(float(loss.detach()), epoch, step)
        loss.backward()
        opt.step()
        with torch.no_grad():
            x.clamp_(0.0, 1.0)

        if logger.isEnabledFor(logging.DEBUG):
            f = terms.as_floats()
            logger.debug(
                "step=%d/%d content=%.4f style=%.4f tv=%.4f",
                step,
                self.config.total_steps,
                f["content"],
                f["style"],
                f["tv"],
            )
        return terms

    def transfer(
        self,
        content: Union[ImageLike, torch.Tensor],
        style: Union[ImageLike, torch.Tensor],
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[torch.Tensor]:
        """Run to completion and return the final (1, H, W, 3) image, or None if cancelled."""
        final: Optional[torch.Tensor] = None
        for event in self.run(content, style, cancel=cancel):
            if on_progress is not None:
                on_progress(event)
            if event.done:
                final = event.image
        return final
