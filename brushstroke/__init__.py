"""brushstroke: optimization-based neural style transfer (no training).

Synthesizes an image that keeps a content image's structure and a style image's
texture by optimizing pixels against a frozen VGG-style feature network.
"""

from brushstroke.config import LayerSpec, LossWeights, OptimizerConfig, TransferConfig
from brushstroke.engine import ProgressEvent, StyleTransfer, TransferState
from brushstroke.errors import (
    ExtractionError,
    InvalidConfigError,
    InvalidInputError,
    OptimizationDivergedError,
    StyleTransferError,
    UnknownLayerError,
)
from brushstroke.losses import gram_matrix, style_content_loss, total_variation_loss
from brushstroke.tensors import to_normalized_tensor, to_pil_image, to_pixel_buffer
from brushstroke.vgg19_features import (
    KERAS_VGG_INPUT,
    TORCHVISION_VGG_INPUT,
    FrozenNetwork,
    InputConvention,
    build_vgg19_network,
    build_vgg_features,
)
from brushstroke.worker import TransferCancelled, TransferFailed, TransferWorker

__version__ = "0.1.0"
