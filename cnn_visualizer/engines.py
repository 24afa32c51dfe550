import asyncio
import logging
import math
import time

import numpy as np

from . import events
from .data_loader import PlaceholderPreprocessor, make_synthetic_dataset
from .layers import LAYERS, LayerKind
from .numpy_nn import Adam, build_network, softmax

logger = logging.getLogger(__name__)

MAX_FILTER_EVENTS = 16
ACTIVATION_SAMPLE_SIZE = 64
FEATURE_MAP_SIZE = 20


def activation_sample(values, size=ACTIVATION_SAMPLE_SIZE, normalize=True):
    flat = np.asarray(values, dtype=np.float32).reshape(-1)[:size]
    if normalize:
        peak = float(np.max(np.abs(flat))) if flat.size else 0.0
        if peak > 0:
            flat = np.clip(flat / peak, 0.0, 1.0)
    return np.round(flat, 4).tolist()


def check_epochs(epochs):
    if isinstance(epochs, bool) or not isinstance(epochs, int) or epochs < 1:
        raise ValueError(f"epochs must be a positive integer, got {epochs!r}")
    return epochs


class Engine:
    """Shared state for the training/inference engines.

    ``train`` and ``process`` are async generators of wire events; callers
    consume them with ``async for``. ``pacing`` scales every artificial
    delay, so ``pacing=0`` runs as fast as the numeric work allows.
    """

    name = 'base'

    def __init__(self, layers=LAYERS, pacing=1.0, max_filter_events=MAX_FILTER_EVENTS,
                 sample_size=ACTIVATION_SAMPLE_SIZE, learning_rate=0.001, seed=None):
        self.layers = tuple(layers)
        self.pacing = pacing
        self.max_filter_events = max_filter_events
        self.sample_size = sample_size
        self.learning_rate = learning_rate
        self.rng = np.random.default_rng(seed)
        self.is_training = False
        self.disposed = False

    async def _pause(self, seconds):
        await asyncio.sleep(seconds * self.pacing)

    def _check_alive(self):
        if self.disposed:
            raise RuntimeError(f"{self.name} engine has been disposed")

    def update_parameters(self, params):
        applied = {}
        learning_rate = params.get('learningRate') if params else None
        if learning_rate is not None:
            learning_rate = float(learning_rate)
            if not learning_rate > 0:
                raise ValueError(f"learning rate must be positive, got {learning_rate}")
            self.learning_rate = learning_rate
            applied['learningRate'] = learning_rate
            logger.info("%s engine learning rate set to %s", self.name, learning_rate)
        return applied

    def dispose(self):
        if self.disposed:
            return
        self.disposed = True
        self.is_training = False
        logger.info("%s engine disposed", self.name)

    async def train(self, epochs=5, batch_size=None):
        raise NotImplementedError
        yield

    async def process(self, image_data_url):
        raise NotImplementedError
        yield


class MockEngine(Engine):
    """Fabricates plausible numbers without any numeric model."""

    name = 'mock'
    batches_per_epoch = 8

    async def train(self, epochs=5, batch_size=None):
        self._check_alive()
        check_epochs(epochs)
        if self.is_training:
            logger.info("Training already in progress, ignoring request")
            return

        self.is_training = True
        try:
            for epoch in range(epochs):
                yield events.training_epoch_start(epoch + 1, epochs)

                # loss decays and accuracy climbs with the epoch
                epoch_loss = 2.3 * math.exp(-epoch * 0.3)
                epoch_accuracy = 0.1 + (epoch / epochs) * 0.8

                for batch in range(self.batches_per_epoch):
                    await self._pause(0.3)
                    loss = max(0.01, epoch_loss + (self.rng.random() - 0.5) * 0.1)
                    accuracy = min(0.99, max(0.01, epoch_accuracy + (self.rng.random() - 0.5) * 0.05))
                    yield events.training_step(epoch + 1, batch + 1, loss, accuracy)
                    for event in self._weight_updates(epoch + 1, batch + 1):
                        yield event

                yield events.training_epoch_complete(epoch + 1, epoch_loss, epoch_accuracy)

            yield events.training_complete(0.02 + self.rng.random() * 0.03, 0.88 + self.rng.random() * 0.1)
        finally:
            self.is_training = False

    def _weight_updates(self, epoch, batch):
        for index, layer in enumerate(self.layers):
            if layer.kind not in (LayerKind.CONV, LayerKind.DENSE, LayerKind.OUTPUT):
                continue
            stats = {
                'mean': float((self.rng.random() - 0.5) * 0.1),
                'std': float(self.rng.random() * 0.5 + 0.1),
                'shape': list(layer.output_shape),
            }
            yield events.weight_update(index, layer.name, epoch, batch, stats)

    async def process(self, image_data_url):
        self._check_alive()
        if not isinstance(image_data_url, str):
            raise ValueError("image payload must be a data URL string")
        total = len(self.layers)
        yield events.processing_start(total)

        for index, layer in enumerate(self.layers):
            yield events.layer_processing_start(index, layer, index / total * 100)
            await self._pause(0.4 + self.rng.random() * 0.3)

            if layer.kind is LayerKind.CONV:
                filters = layer.params.get('filters', layer.output_shape[-1])
                for filter_index in range(min(filters, self.max_filter_events)):
                    activation = self.rng.random() * 0.8 + 0.1
                    yield events.filter_activation(index, filter_index, activation,
                                                   self._feature_map(layer.output_shape, activation))
                    await self._pause(0.08)

            yield events.layer_processing_complete(index, layer, self._activation_data(layer),
                                                   self.rng.random() * 50 + 15)

        yield events.processing_complete(self._predictions())

    def _feature_map(self, output_shape, base_activation):
        if len(output_shape) < 3:
            return []
        height = min(output_shape[0], FEATURE_MAP_SIZE)
        width = min(output_shape[1], FEATURE_MAP_SIZE)
        rows, cols = np.mgrid[0:height, 0:width]
        # spatially correlated: strongest near the centre
        distance = np.sqrt((rows - height / 2) ** 2 + (cols - width / 2) ** 2)
        weight = np.exp(-distance / (height / 3))
        values = base_activation * weight * (0.7 + self.rng.random((height, width)) * 0.6)
        return np.round(np.clip(values, 0.0, 1.0), 4).tolist()

    def _activation_data(self, layer):
        size = min(int(np.prod(layer.output_shape)), self.sample_size)
        base = np.sin(np.arange(size) * 0.3) * 0.3 + 0.5
        noise = (self.rng.random(size) - 0.5) * 0.4
        return np.round(np.clip(base + noise, 0.0, 1.0), 4).tolist()

    def _predictions(self):
        predictions = self.rng.random(10) * 0.1
        predictions[self.rng.integers(0, 10)] = 0.6 + self.rng.random() * 0.3
        return (predictions / predictions.sum()).tolist()


class NumpyEngine(Engine):
    """Runs a real (small) CNN built from the layer registry."""

    name = 'numpy'

    def __init__(self, layers=LAYERS, num_samples=100, batch_size=32, preprocessor=None, **kwargs):
        super().__init__(layers, **kwargs)
        self.num_samples = num_samples
        self.batch_size = batch_size
        self.preprocessor = preprocessor if preprocessor is not None else PlaceholderPreprocessor(self.rng)
        self.network = None
        self.optimizer = None

    def _ensure_network(self):
        self._check_alive()
        if self.network is None:
            self.network = build_network(self.layers, rng=self.rng)
            self.optimizer = Adam(learning_rate=self.learning_rate)
            logger.info("Built numpy CNN with %d stages", len(self.network.stages))
        return self.network

    def update_parameters(self, params):
        applied = super().update_parameters(params)
        if 'learningRate' in applied and self.optimizer is not None:
            self.optimizer.lr = applied['learningRate']
        return applied

    async def train(self, epochs=5, batch_size=None):
        check_epochs(epochs)
        network = self._ensure_network()
        if self.is_training:
            logger.info("Training already in progress, ignoring request")
            return

        batch_size = batch_size or self.batch_size
        self.is_training = True
        try:
            images, labels = make_synthetic_dataset(self.num_samples, self.rng)
            n_batches = math.ceil(len(images) / batch_size)
            avg_loss = avg_accuracy = 0.0

            for epoch in range(epochs):
                yield events.training_epoch_start(epoch + 1, epochs)
                indices = self.rng.permutation(len(images))
                images_shuffled, labels_shuffled = images[indices], labels[indices]
                epoch_loss = epoch_accuracy = 0.0

                for batch in range(n_batches):
                    start = batch * batch_size
                    x_batch = images_shuffled[start:start + batch_size]
                    y_batch = labels_shuffled[start:start + batch_size]
                    loss, accuracy = await asyncio.to_thread(network.train_batch, x_batch, y_batch, self.optimizer)
                    epoch_loss += loss
                    epoch_accuracy += accuracy

                    yield events.training_step(epoch + 1, batch + 1, loss, accuracy)
                    for index, stats in network.weight_stats():
                        yield events.weight_update(index, self.layers[index].name, epoch + 1, batch + 1, stats)
                    await self._pause(0.2)

                avg_loss = epoch_loss / n_batches
                avg_accuracy = epoch_accuracy / n_batches
                yield events.training_epoch_complete(epoch + 1, avg_loss, avg_accuracy)

            yield events.training_complete(avg_loss, avg_accuracy)
        finally:
            self.is_training = False

    async def process(self, image_data_url):
        network = self._ensure_network()
        x = self.preprocessor(image_data_url)
        total = len(self.layers)
        yield events.processing_start(total)

        for index, layer in enumerate(self.layers):
            yield events.layer_processing_start(index, layer, index / total * 100)
            await self._pause(0.3)

            started = time.perf_counter()
            x = await asyncio.to_thread(network.forward_stage, index, x)
            elapsed = (time.perf_counter() - started) * 1000

            if layer.kind is LayerKind.OUTPUT:
                sample = activation_sample(softmax(x), self.sample_size, normalize=False)
            else:
                sample = activation_sample(x, self.sample_size)

            if layer.kind is LayerKind.CONV:
                for event in self._filter_events(index, x[0]):
                    yield event
                    await self._pause(0.05)

            yield events.layer_processing_complete(index, layer, sample, elapsed)

        yield events.processing_complete(softmax(x)[0])

    def _filter_events(self, layer_index, feature_maps):
        peak = float(feature_maps.max())
        scale = peak if peak > 0 else 1.0
        for filter_index in range(min(feature_maps.shape[0], self.max_filter_events)):
            feature_map = feature_maps[filter_index] / scale
            cropped = feature_map[:FEATURE_MAP_SIZE, :FEATURE_MAP_SIZE]
            yield events.filter_activation(layer_index, filter_index, float(feature_map.mean()),
                                           np.round(cropped, 4).tolist())

    def dispose(self):
        self.network = None
        self.optimizer = None
        super().dispose()


ENGINES = {
    MockEngine.name: MockEngine,
    NumpyEngine.name: NumpyEngine,
}


def create_engine(name='mock', **kwargs):
    try:
        engine_cls = ENGINES[name]
    except KeyError:
        raise ValueError(f"Unknown engine {name!r}, expected one of {sorted(ENGINES)}") from None
    return engine_cls(**kwargs)
