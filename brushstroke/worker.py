"""Runs a transfer on a background thread and streams events over a queue.

The worker owns every tensor of its run; the network and its cached extractors
are only read, so several workers may share one network.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Iterator, Optional, Union

import torch

from brushstroke.config import TransferConfig
from brushstroke.engine import ProgressEvent, StyleTransfer, TransferState
from brushstroke.tensors import ImageLike
from brushstroke.vgg19_features import LayerNetwork

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferFailed:
    error: BaseException


@dataclass(frozen=True)
class TransferCancelled:
    epoch: int


WorkerMessage = Union[ProgressEvent, TransferFailed, TransferCancelled]


class TransferWorker:
    def __init__(
        self,
        network: LayerNetwork,
        config: Optional[TransferConfig] = None,
        num_threads: Optional[int] = None,
    ) -> None:
        self.engine = StyleTransfer(network, config)
        self.num_threads = num_threads
        self.messages: "queue.Queue[WorkerMessage]" = queue.Queue()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> TransferState:
        return self.engine.state

    def start(self, content: Union[ImageLike, torch.Tensor], style: Union[ImageLike, torch.Tensor]) -> "TransferWorker":
        if self._thread is not None:
            raise RuntimeError("TransferWorker can only be started once")
        self._thread = threading.Thread(
            target=self._run, args=(content, style), name="brushstroke-transfer", daemon=True
        )
        self._thread.start()
        return self

    def _run(self, content, style) -> None:
        if self.num_threads:
            torch.set_num_threads(int(self.num_threads))
        last_epoch = 0
        try:
            for event in self.engine.run(content, style, cancel=self._cancel):
                last_epoch = event.epoch
                self.messages.put(event)
        except Exception as e:
            logger.exception("Transfer failed")
            self.messages.put(TransferFailed(e))
            return
        if self.engine.state is TransferState.CANCELLED:
            self.messages.put(TransferCancelled(last_epoch))

    def cancel(self) -> None:
        """Ask the run to stop before its next step."""
        self._cancel.set()

    def events(self, timeout: Optional[float] = None) -> Iterator[WorkerMessage]:
        """Yield messages until a terminal one (progress 100, failure or cancellation).

        Raises `queue.Empty` if no message arrives within `timeout` seconds.
        """
        while True:
            msg = self.messages.get(timeout=timeout)
            yield msg
            if not isinstance(msg, ProgressEvent) or msg.done:
                return

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()
