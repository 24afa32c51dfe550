import numpy as np
from numpy.lib.stride_tricks import as_strided

from .layers import LayerKind


def _im2col(x, kernel, stride):
    N, C, H, W = x.shape
    out_h = (H - kernel) // stride + 1
    out_w = (W - kernel) // stride + 1
    shape = (N, C, out_h, out_w, kernel, kernel)
    strides = (
        x.strides[0],
        x.strides[1],
        x.strides[2] * stride,
        x.strides[3] * stride,
        x.strides[2],
        x.strides[3],
    )
    windows = as_strided(x, shape=shape, strides=strides, writeable=False)
    cols = windows.transpose(0, 2, 3, 1, 4, 5).reshape(N * out_h * out_w, -1)
    return cols, out_h, out_w


def _col2im(cols, x_shape, kernel, stride):
    N, C, H, W = x_shape
    out_h = (H - kernel) // stride + 1
    out_w = (W - kernel) // stride + 1
    cols_reshaped = cols.reshape(N, out_h, out_w, C, kernel, kernel).transpose(0, 3, 4, 5, 1, 2)
    x = np.zeros(x_shape, dtype=cols.dtype)
    for i in range(kernel):
        for j in range(kernel):
            x[:, :, i:i + out_h * stride:stride, j:j + out_w * stride:stride] += cols_reshaped[:, :, i, j]
    return x


def _pool_windows(x, pool, stride):
    N, C, H, W = x.shape
    out_h = (H - pool) // stride + 1
    out_w = (W - pool) // stride + 1
    shape = (N, C, out_h, out_w, pool, pool)
    strides = (
        x.strides[0],
        x.strides[1],
        x.strides[2] * stride,
        x.strides[3] * stride,
        x.strides[2],
        x.strides[3],
    )
    windows = as_strided(x, shape=shape, strides=strides, writeable=False)
    return windows, out_h, out_w


def softmax(logits):
    # numerically stable softmax over the class axis
    logits = np.asarray(logits, dtype=np.float32)
    shifted = logits - np.max(logits, axis=-1, keepdims=True)
    exp_logits = np.exp(shifted)
    return exp_logits / np.sum(exp_logits, axis=-1, keepdims=True)


class Conv2D:
    """Valid (unpadded) convolution, NCHW layout."""

    def __init__(self, in_channels, out_channels, kernel_size=3, stride=1, rng=None):
        rng = rng if rng is not None else np.random.default_rng()
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.kernel_size = kernel_size
        self.stride = stride

        scale = np.sqrt(2.0 / (in_channels * kernel_size * kernel_size))
        self.weights = (rng.standard_normal((out_channels, in_channels, kernel_size, kernel_size)) * scale).astype(np.float32)
        self.bias = np.zeros(out_channels, dtype=np.float32)
        self.cache = None
        self.dW = None
        self.db = None

    def forward(self, x):
        x = np.ascontiguousarray(x, dtype=np.float32)
        cols, out_h, out_w = _im2col(x, self.kernel_size, self.stride)
        cols = np.ascontiguousarray(cols, dtype=np.float32)
        W_col = self.weights.reshape(self.out_channels, -1)
        out = (cols @ W_col.T).astype(np.float32, copy=False)
        out = out.reshape(x.shape[0], out_h, out_w, self.out_channels).transpose(0, 3, 1, 2)
        out = out + self.bias.reshape(1, -1, 1, 1)
        self.cache = (x.shape, cols)
        return out

    def backward(self, dout):
        input_shape, cols = self.cache
        dout_reshaped = dout.transpose(1, 0, 2, 3).reshape(self.out_channels, -1)
        self.db = dout_reshaped.sum(axis=1).astype(np.float32, copy=False)
        self.dW = (dout_reshaped @ cols).reshape(self.weights.shape).astype(np.float32, copy=False)
        W_col = self.weights.reshape(self.out_channels, -1)
        dcols = dout_reshaped.T @ W_col
        dx = _col2im(dcols, input_shape, self.kernel_size, self.stride)
        self.cache = None
        return dx.astype(np.float32, copy=False)


class ReLU:
    def __init__(self):
        self.cache = None

    def forward(self, x):
        x = x.astype(np.float32, copy=False)
        self.cache = x
        return np.maximum(x, 0)

    def backward(self, dout):
        out = dout * (self.cache > 0)
        self.cache = None
        return out


class MaxPool:
    def __init__(self, pool_size=2, stride=2):
        self.pool_size = pool_size
        self.stride = stride
        self.cache = None

    def forward(self, x):
        x = np.ascontiguousarray(x, dtype=np.float32)
        windows, out_h, out_w = _pool_windows(x, self.pool_size, self.stride)
        flat = windows.reshape(x.shape[0], x.shape[1], out_h, out_w, -1)
        out = flat.max(axis=-1)
        self.cache = (x.shape, out_h, out_w, flat.argmax(axis=-1).astype(np.int32))
        return out

    def backward(self, dout):
        input_shape, out_h, out_w, max_idx = self.cache
        N, C, _, _ = input_shape
        max_idx = max_idx.reshape(-1)
        dx = np.zeros(input_shape, dtype=dout.dtype)
        n_idx = np.repeat(np.arange(N), C * out_h * out_w)
        c_idx = np.tile(np.repeat(np.arange(C), out_h * out_w), N)
        h_idx = np.tile(np.repeat(np.arange(out_h), out_w), N * C)
        w_idx = np.tile(np.arange(out_w), N * C * out_h)
        h_final = h_idx * self.stride + max_idx // self.pool_size
        w_final = w_idx * self.stride + max_idx % self.pool_size
        np.add.at(dx, (n_idx, c_idx, h_final, w_final), dout.reshape(-1))
        self.cache = None
        return dx


class Flatten:
    def __init__(self):
        self.cache = None

    def forward(self, x):
        # (batch, channels, h, w) -> (batch, channels*h*w)
        self.cache = x.shape
        return x.reshape(x.shape[0], -1).astype(np.float32, copy=False)

    def backward(self, dout):
        out = dout.reshape(self.cache)
        self.cache = None
        return out


class Dense:
    def __init__(self, in_features, out_features, rng=None):
        rng = rng if rng is not None else np.random.default_rng()
        self.in_features = in_features
        self.out_features = out_features

        scale = np.sqrt(2.0 / in_features)
        self.weights = (rng.standard_normal((in_features, out_features)) * scale).astype(np.float32)
        self.bias = np.zeros(out_features, dtype=np.float32)
        self.cache = None
        self.dW = None
        self.db = None

    def forward(self, x):
        x = x.astype(np.float32, copy=False)
        self.cache = x
        return x @ self.weights + self.bias

    def backward(self, dout):
        x = self.cache
        self.dW = (x.T @ dout).astype(np.float32, copy=False)
        self.db = np.sum(dout, axis=0).astype(np.float32, copy=False)
        out = (dout @ self.weights.T).astype(np.float32, copy=False)
        self.cache = None
        return out


class Dropout:
    """Inverted dropout; identity unless ``training`` is set."""

    def __init__(self, rate=0.5, rng=None):
        if not 0 <= rate < 1:
            raise ValueError("dropout rate must be in [0, 1)")
        self.rate = rate
        self.rng = rng if rng is not None else np.random.default_rng()
        self.training = False
        self.cache = None

    def forward(self, x):
        if not self.training or self.rate == 0:
            self.cache = None
            return x
        keep = 1.0 - self.rate
        mask = (self.rng.random(x.shape) < keep).astype(np.float32) / keep
        self.cache = mask
        return x * mask

    def backward(self, dout):
        if self.cache is None:
            return dout
        out = dout * self.cache
        self.cache = None
        return out


class SoftmaxCrossEntropy:
    def __init__(self):
        self.cache = None

    def forward(self, logits, labels):
        probs = softmax(logits)
        N = probs.shape[0]
        loss = -np.mean(np.log(probs[np.arange(N), labels] + 1e-8))
        self.cache = (probs, labels)
        return float(loss)

    def backward(self):
        probs, labels = self.cache
        N = probs.shape[0]

        dlogits = probs.copy()
        dlogits[np.arange(N), labels] -= 1
        dlogits /= N

        return dlogits.astype(np.float32, copy=False)


class Adam:
    def __init__(self, learning_rate=0.001, beta1=0.9, beta2=0.999, eps=1e-8):
        self.lr = learning_rate
        self.beta1 = beta1
        self.beta2 = beta2
        self.eps = eps
        self.t = 0
        self.moments = {}

    def step(self, layers):
        self.t += 1
        for layer in layers:
            if not hasattr(layer, 'weights') or layer.dW is None:
                continue
            layer.weights -= self._update(layer, 'weights', layer.dW)
            layer.bias -= self._update(layer, 'bias', layer.db)

    def _update(self, layer, name, grad):
        key = (id(layer), name)
        m, v = self.moments.get(key, (np.zeros_like(grad), np.zeros_like(grad)))
        m = self.beta1 * m + (1 - self.beta1) * grad
        v = self.beta2 * v + (1 - self.beta2) * grad * grad
        self.moments[key] = (m, v)
        m_hat = m / (1 - self.beta1 ** self.t)
        v_hat = v / (1 - self.beta2 ** self.t)
        return (self.lr * m_hat / (np.sqrt(v_hat) + self.eps)).astype(np.float32, copy=False)


def hwc_to_chw(shape):
    if len(shape) == 3:
        height, width, channels = shape
        return (channels, height, width)
    return tuple(shape)


def chw_to_hwc(shape):
    if len(shape) == 3:
        channels, height, width = shape
        return (height, width, channels)
    return tuple(shape)


def _flatten_if_spatial(shape):
    if len(shape) > 1:
        return [Flatten()], int(np.prod(shape))
    return [], int(shape[0])


def _input_stage(layer, shape, rng):
    return [], hwc_to_chw(layer.output_shape)


def _conv_stage(layer, shape, rng):
    channels, height, width = shape
    kernel = layer.params.get('kernel_size', 3)
    filters = layer.params['filters']
    modules = [Conv2D(channels, filters, kernel_size=kernel, rng=rng), ReLU()]
    return modules, (filters, height - kernel + 1, width - kernel + 1)


def _pool_stage(layer, shape, rng):
    channels, height, width = shape
    pool = layer.params.get('pool_size', 2)
    return [MaxPool(pool, pool)], (channels, (height - pool) // pool + 1, (width - pool) // pool + 1)


def _flatten_stage(layer, shape, rng):
    return [Flatten()], (int(np.prod(shape)),)


def _dense_stage(layer, shape, rng):
    modules, in_features = _flatten_if_spatial(shape)
    units = layer.params['units']
    modules += [Dense(in_features, units, rng=rng), ReLU()]
    if layer.params.get('rate'):
        modules.append(Dropout(layer.params['rate'], rng=rng))
    return modules, (units,)


def _dropout_stage(layer, shape, rng):
    return [Dropout(layer.params.get('rate', 0.5), rng=rng)], shape


def _output_stage(layer, shape, rng):
    # emits logits; softmax is applied by the caller
    modules, in_features = _flatten_if_spatial(shape)
    units = layer.params.get('units', layer.output_shape[0])
    modules.append(Dense(in_features, units, rng=rng))
    return modules, (units,)


STAGE_BUILDERS = {
    LayerKind.INPUT: _input_stage,
    LayerKind.CONV: _conv_stage,
    LayerKind.POOL: _pool_stage,
    LayerKind.FLATTEN: _flatten_stage,
    LayerKind.DENSE: _dense_stage,
    LayerKind.DROPOUT: _dropout_stage,
    LayerKind.OUTPUT: _output_stage,
}


class Network:
    """A stack of stages, one per layer descriptor."""

    def __init__(self, stages):
        self.stages = stages
        self.loss_fn = SoftmaxCrossEntropy()

    @property
    def layers(self):
        return [module for stage in self.stages for module in stage]

    def set_training(self, training):
        for module in self.layers:
            if isinstance(module, Dropout):
                module.training = training

    def forward_stage(self, index, x):
        for module in self.stages[index]:
            x = module.forward(x)
        return x

    def forward(self, x):
        for index in range(len(self.stages)):
            x = self.forward_stage(index, x)
        return x

    def backward(self, dout):
        for module in reversed(self.layers):
            dout = module.backward(dout)
        return dout

    def train_batch(self, x, y, optimizer):
        self.set_training(True)
        try:
            logits = self.forward(x)
            loss = self.loss_fn.forward(logits, y)
            self.backward(self.loss_fn.backward())
            optimizer.step(self.layers)
        finally:
            self.set_training(False)
        accuracy = float(np.mean(np.argmax(logits, axis=1) == y))
        return loss, accuracy

    def weight_stats(self):
        stats = []
        for index, stage in enumerate(self.stages):
            weighted = [module for module in stage if hasattr(module, 'weights')]
            if not weighted:
                continue
            weights = weighted[0].weights
            stats.append((index, {
                'mean': float(weights.mean()),
                'std': float(weights.std()),
                'shape': list(weights.shape),
            }))
        return stats


def build_network(layers, rng=None):
    rng = rng if rng is not None else np.random.default_rng()
    if not layers or layers[0].kind is not LayerKind.INPUT:
        raise ValueError("layer registry must start with an input layer")
    shape = None
    stages = []
    for layer in layers:
        modules, shape = STAGE_BUILDERS[layer.kind](layer, shape, rng)
        if chw_to_hwc(shape) != tuple(layer.output_shape):
            raise ValueError(f"{layer.name} produces {chw_to_hwc(shape)}, registry says {layer.output_shape}")
        stages.append(modules)
    return Network(stages)
