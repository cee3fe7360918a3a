import threading

import numpy as np
import pytest
import torch

from brushstroke.config import LayerSpec, LossWeights, OptimizerConfig, TransferConfig
from brushstroke.engine import StyleTransfer, TransferState
from brushstroke.errors import InvalidInputError, OptimizationDivergedError, UnknownLayerError
from brushstroke.losses import compute_targets

IDENTITY_LAYERS = LayerSpec(content_layers=("block2_conv1",), style_layers=("block1_conv1",))


def _config(**kw):
    base = dict(
        image_size=32,
        epochs=3,
        steps_per_epoch=1,
        layers=IDENTITY_LAYERS,
        weights=LossWeights(style_weight=1.0, content_weight=1.0),
        optimizer=OptimizerConfig(learning_rate=0.01, beta1=0.9),
    )
    base.update(kw)
    return TransferConfig(**base)


def test_progress_is_monotonic_and_ends_at_100(identity_network, gray_image, patterned_image):
    engine = StyleTransfer(identity_network, _config(epochs=4, steps_per_epoch=2))
    events = list(engine.run(gray_image, patterned_image))

    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    assert progress == [25.0, 50.0, 75.0, 100.0]
    assert sum(1 for p in progress if p == 100.0) == 1
    assert [e.epoch for e in events] == [1, 2, 3, 4]
    assert events[-1].done
    assert engine.state is TransferState.DONE


def test_pixels_stay_in_unit_range_after_every_step(identity_network, gray_image, patterned_image):
    cfg = _config(epochs=6, optimizer=OptimizerConfig(learning_rate=0.5, beta1=0.9))
    for event in StyleTransfer(identity_network, cfg).run(gray_image, patterned_image):
        assert float(event.image.min()) >= 0.0
        assert float(event.image.max()) <= 1.0


def test_loss_decreases_over_short_run(identity_network, gray_image, blue_image):
    cfg = _config(epochs=3, steps_per_epoch=5, optimizer=OptimizerConfig(learning_rate=0.005, beta1=0.9))
    engine = StyleTransfer(identity_network, cfg)
    style_t, content_t = compute_targets(
        engine.style_extractor, engine.content_extractor, blue_image, gray_image
    )

    with torch.no_grad():
        initial = float(engine.loss(gray_image, style_t, content_t).total)
    events = list(engine.run(gray_image, blue_image))
    with torch.no_grad():
        final = float(engine.loss(events[-1].image, style_t, content_t).total)

    assert final < initial
    assert events[-1].loss["total"] < initial


def test_style_pull_towards_blue(identity_network):
    content = torch.full((1, 112, 112, 3), 0.5)
    style = torch.zeros((1, 112, 112, 3))
    style[..., 2] = 1.0
    cfg = TransferConfig(
        image_size=112,
        epochs=1,
        steps_per_epoch=10,
        layers=IDENTITY_LAYERS,
        weights=LossWeights(style_weight=100.0, content_weight=1.0),
    )

    final = StyleTransfer(identity_network, cfg).transfer(content, style)

    assert final is not None
    assert float(final[..., 2].mean()) > float(content[..., 2].mean()) + 0.05
    assert float(final.min()) >= 0.0 and float(final.max()) <= 1.0


def test_runs_are_deterministic(identity_network, gray_image, patterned_image):
    cfg = _config(epochs=2, steps_per_epoch=3)
    a = StyleTransfer(identity_network, cfg).transfer(gray_image, patterned_image)
    b = StyleTransfer(identity_network, cfg).transfer(gray_image, patterned_image)
    assert torch.equal(a, b)


def test_noise_init_is_seeded(identity_network, gray_image, patterned_image):
    cfg = _config(epochs=1, init="noise", seed=7)
    a = StyleTransfer(identity_network, cfg).transfer(gray_image, patterned_image)
    b = StyleTransfer(identity_network, cfg).transfer(gray_image, patterned_image)
    assert torch.equal(a, b)
    assert not torch.allclose(a, gray_image, atol=0.05)


def test_inputs_leave_caller_tensors_untouched(identity_network, gray_image, patterned_image):
    before = gray_image.clone()
    StyleTransfer(identity_network, _config()).transfer(gray_image, patterned_image)
    assert torch.equal(gray_image, before)


def test_accepts_raw_pixel_arrays(identity_network):
    content = np.full((20, 30, 3), 128, dtype=np.uint8)
    style = np.random.RandomState(0).randint(0, 256, size=(50, 40, 3), dtype=np.uint8)
    events = []
    final = StyleTransfer(identity_network, _config(image_size=24)).transfer(content, style, on_progress=events.append)
    assert final.shape == (1, 24, 24, 3)
    assert len(events) == 3
    assert len(events[-1].pixels()) == 24 * 24 * 4


def test_rejects_malformed_image_tensor(identity_network, gray_image):
    engine = StyleTransfer(identity_network, _config())
    with pytest.raises(InvalidInputError):
        list(engine.run(torch.zeros(1, 3, 32, 32), gray_image))
    assert engine.state is TransferState.FAILED


def test_unknown_layer_fails_at_construction(identity_network):
    cfg = _config(layers=LayerSpec(content_layers=("block5_conv2",), style_layers=("block1_conv1",)))
    with pytest.raises(UnknownLayerError):
        StyleTransfer(identity_network, cfg)


def test_non_finite_loss_aborts_without_progress(identity_network, patterned_image):
    content = torch.full((1, 32, 32, 3), float("nan"))
    engine = StyleTransfer(identity_network, _config())
    events = []
    with pytest.raises(OptimizationDivergedError) as info:
        for event in engine.run(content, patterned_image):
            events.append(event)
    assert events == []
    assert info.value.epoch == 1 and info.value.step == 1
    assert engine.state is TransferState.FAILED


def test_cancel_before_first_step(identity_network, gray_image, patterned_image):
    cancel = threading.Event()
    cancel.set()
    engine = StyleTransfer(identity_network, _config())
    assert engine.transfer(gray_image, patterned_image, cancel=cancel) is None
    assert engine.state is TransferState.CANCELLED


def test_cancel_between_epochs(identity_network, gray_image, patterned_image):
    cancel = threading.Event()
    engine = StyleTransfer(identity_network, _config(epochs=5))
    seen = []
    for event in engine.run(gray_image, patterned_image, cancel=cancel):
        seen.append(event.progress)
        cancel.set()
    assert seen == [20.0]
    assert engine.state is TransferState.CANCELLED


def test_sgd_optimizer(identity_network, gray_image, patterned_image):
    cfg = _config(optimizer=OptimizerConfig(kind="sgd", learning_rate=1e-12, momentum=0.9))
    final = StyleTransfer(identity_network, cfg).transfer(gray_image, patterned_image)
    assert final.shape == gray_image.shape
