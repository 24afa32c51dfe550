import logging

import numpy as np

from .layers import INPUT_SHAPE, NUM_CLASSES

logger = logging.getLogger(__name__)


def make_synthetic_dataset(num_samples=100, rng=None):
    """Random images and labels standing in for MNIST.

    Images come back as (batch, channels, height, width) float32 and labels
    as int64 class indices.
    """
    rng = rng if rng is not None else np.random.default_rng()
    height, width, channels = INPUT_SHAPE
    images = rng.standard_normal((num_samples, channels, height, width)).astype(np.float32)
    labels = rng.integers(0, NUM_CLASSES, size=num_samples).astype(np.int64)
    return images, labels


def placeholder_digit(rng=None, radius=10.0, noise=0.1):
    rng = rng if rng is not None else np.random.default_rng()
    height, width, _ = INPUT_SHAPE
    rows, cols = np.mgrid[0:height, 0:width]
    distance = np.sqrt((rows - height // 2) ** 2 + (cols - width // 2) ** 2)
    image = np.maximum(0.0, 1.0 - distance / radius) + rng.random((height, width)) * noise
    return np.minimum(1.0, image).astype(np.float32)


class InputPreprocessor:
    """Turns a client image payload into a (1, channels, height, width) batch."""

    def __call__(self, image_data_url):
        raise NotImplementedError


class PlaceholderPreprocessor(InputPreprocessor):
    """Ignores the pixels and synthesizes a centred blob.

    Decoding the data URL is left to a dedicated preprocessor; this one only
    checks that the payload looks like an image data URL.
    """

    def __init__(self, rng=None):
        self.rng = rng if rng is not None else np.random.default_rng()

    def __call__(self, image_data_url):
        if not isinstance(image_data_url, str):
            raise ValueError("image payload must be a data URL string")
        if image_data_url and not image_data_url.startswith('data:image'):
            logger.warning("Unexpected image payload prefix: %r", image_data_url[:24])
        image = placeholder_digit(self.rng)
        return image.reshape(1, 1, *image.shape)
