from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType


class LayerKind(Enum):
    INPUT = 'input'
    CONV = 'conv'
    POOL = 'pool'
    FLATTEN = 'flatten'
    DENSE = 'dense'
    OUTPUT = 'output'
    DROPOUT = 'dropout'

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        text = _ALIASES.get(text, text)
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown layer type: {value!r}") from None


_ALIASES = {
    'convolution': 'conv',
    'conv2d': 'conv',
    'maxpooling': 'pool',
    'maxpooling2d': 'pool',
    'pooling': 'pool',
}


@dataclass(frozen=True)
class LayerDescriptor:
    name: str
    kind: LayerKind
    output_shape: tuple
    description: str
    params: MappingProxyType = field(default_factory=lambda: MappingProxyType({}), compare=False)

    @property
    def size(self):
        return '×'.join(str(dim) for dim in self.output_shape)

    def to_dict(self):
        return {
            'name': self.name,
            'type': self.kind.value,
            'outputShape': list(self.output_shape),
            'size': self.size,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data):
        shape = data.get('outputShape')
        if shape is None:
            # client payloads only carry the display string, e.g. "26×26×32"
            size = str(data.get('size', '')).replace('x', '×')
            shape = [part for part in size.split('×') if part.strip()]
        return cls(
            name=str(data.get('name', '')),
            kind=LayerKind.parse(data.get('type', 'dense')),
            output_shape=tuple(int(dim) for dim in shape if dim is not None),
            description=str(data.get('description', '')),
        )


def _layer(name, kind, shape, description, **params):
    return LayerDescriptor(name, kind, tuple(shape), description, MappingProxyType(params))


LAYERS = (
    _layer('Input', LayerKind.INPUT, (28, 28, 1), 'Original image data'),
    _layer('Conv1', LayerKind.CONV, (26, 26, 32), '32 filters, 3×3 kernel', filters=32, kernel_size=3),
    _layer('Pool1', LayerKind.POOL, (13, 13, 32), '2×2 max pooling', pool_size=2),
    _layer('Conv2', LayerKind.CONV, (11, 11, 64), '64 filters, 3×3 kernel', filters=64, kernel_size=3),
    _layer('Pool2', LayerKind.POOL, (5, 5, 64), '2×2 max pooling', pool_size=2),
    _layer('Dense', LayerKind.DENSE, (128,), '128 neurons', units=128, rate=0.2),
    _layer('Output', LayerKind.OUTPUT, (10,), '10 classes (0-9)', units=10),
)

INPUT_SHAPE = LAYERS[0].output_shape
NUM_CLASSES = LAYERS[-1].output_shape[0]


def layers_as_dicts(layers=LAYERS):
    return [layer.to_dict() for layer in layers]
