"""Tests for the numpy CNN building blocks."""

import dataclasses

import numpy as np
import pytest

from cnn_visualizer.layers import LAYERS, LayerKind
from cnn_visualizer.numpy_nn import (
    STAGE_BUILDERS,
    Adam,
    Conv2D,
    Dense,
    Dropout,
    MaxPool,
    build_network,
    chw_to_hwc,
    softmax,
)


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def network(rng):
    return build_network(LAYERS, rng=rng)


class TestPrimitives:
    """Tests for individual layers."""

    def test_conv_output_shape(self, rng):
        conv = Conv2D(1, 4, kernel_size=3, rng=rng)
        out = conv.forward(rng.standard_normal((2, 1, 28, 28)))
        assert out.shape == (2, 4, 26, 26)

    def test_conv_backward_shape(self, rng):
        conv = Conv2D(2, 3, kernel_size=3, rng=rng)
        x = rng.standard_normal((1, 2, 6, 6))
        out = conv.forward(x)
        dx = conv.backward(np.ones_like(out))
        assert dx.shape == x.shape
        assert conv.dW.shape == conv.weights.shape

    def test_maxpool_picks_max(self):
        x = np.arange(16, dtype=np.float32).reshape(1, 1, 4, 4)
        out = MaxPool(2, 2).forward(x)
        np.testing.assert_array_equal(out[0, 0], [[5, 7], [13, 15]])

    def test_maxpool_odd_size_floors(self, rng):
        out = MaxPool(2, 2).forward(rng.standard_normal((1, 3, 11, 11)))
        assert out.shape == (1, 3, 5, 5)

    def test_dropout_identity_in_eval(self, rng):
        """Test that dropout passes input through when not training."""
        dropout = Dropout(0.2, rng=rng)
        x = rng.standard_normal((4, 8)).astype(np.float32)
        np.testing.assert_array_equal(dropout.forward(x), x)

    def test_dropout_zeroes_when_training(self, rng):
        dropout = Dropout(0.5, rng=rng)
        dropout.training = True
        out = dropout.forward(np.ones((1, 1000), dtype=np.float32))
        assert (out == 0).any()
        assert set(np.unique(out)) <= {0.0, 2.0}

    def test_dropout_rejects_bad_rate(self):
        with pytest.raises(ValueError):
            Dropout(1.0)

    def test_softmax_sums_to_one(self):
        probs = softmax(np.array([[1.0, 2.0, 3.0], [1000.0, 0.0, -1000.0]]))
        np.testing.assert_allclose(probs.sum(axis=1), [1.0, 1.0], rtol=1e-5)
        assert np.isfinite(probs).all()

    def test_adam_moves_weights(self, rng):
        dense = Dense(4, 2, rng=rng)
        before = dense.weights.copy()
        out = dense.forward(rng.standard_normal((3, 4)))
        dense.backward(np.ones_like(out))
        Adam(learning_rate=0.01).step([dense])
        assert not np.allclose(before, dense.weights)


class TestBuildNetwork:
    """Tests for building a network from the layer registry."""

    def test_every_kind_has_builder(self):
        assert set(STAGE_BUILDERS) == set(LayerKind)

    def test_one_stage_per_layer(self, network):
        assert len(network.stages) == len(LAYERS)

    def test_rejects_shape_mismatch(self, rng):
        """Test that a layer whose declared shape disagrees with the computed one is refused."""
        layers = list(LAYERS)
        layers[2] = dataclasses.replace(layers[2], output_shape=(12, 12, 32))
        with pytest.raises(ValueError, match='Pool1 produces'):
            build_network(layers, rng=rng)

    def test_forward_stage_shapes(self, network, rng):
        x = rng.standard_normal((1, 1, 28, 28)).astype(np.float32)
        for index, layer in enumerate(LAYERS):
            x = network.forward_stage(index, x)
            assert chw_to_hwc(x.shape[1:]) == layer.output_shape

    def test_requires_input_first(self, rng):
        with pytest.raises(ValueError):
            build_network(LAYERS[1:], rng=rng)

    def test_forward_probabilities(self, network, rng):
        probs = softmax(network.forward(rng.standard_normal((3, 1, 28, 28))))
        assert probs.shape == (3, 10)
        np.testing.assert_allclose(probs.sum(axis=1), np.ones(3), rtol=1e-5)

    def test_train_batch(self, network, rng):
        """Test that one training step reports loss and accuracy and updates weights."""
        x = rng.standard_normal((4, 1, 28, 28)).astype(np.float32)
        y = np.array([0, 1, 2, 3])
        before = network.stages[1][0].weights.copy()
        loss, accuracy = network.train_batch(x, y, Adam())
        assert loss > 0
        assert 0.0 <= accuracy <= 1.0
        assert not np.allclose(before, network.stages[1][0].weights)

    def test_train_batch_restores_eval_mode(self, network, rng):
        network.train_batch(rng.standard_normal((2, 1, 28, 28)), np.array([1, 2]), Adam())
        dropouts = [module for module in network.layers if isinstance(module, Dropout)]
        assert dropouts
        assert not any(module.training for module in dropouts)

    def test_weight_stats(self, network):
        stats = dict(network.weight_stats())
        assert sorted(stats) == [1, 3, 5, 6]
        assert stats[1]['shape'] == [32, 1, 3, 3]
        assert stats[6]['shape'] == [128, 10]
