from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from .activations import ActivationFn, get_activation
from .errors import PassOrderError, ShapeMismatchError
from .optim import AdamConfig, AdamState, check_learning_rate
from .tensor import Tensor

logger = logging.getLogger(__name__)

# one 2-D Tensor per channel, all of the same spatial shape
FeatureMap = List[Tensor]


def as_feature_map(x: Union[Tensor, Sequence[Tensor]]) -> FeatureMap:
    if isinstance(x, Tensor):
        return [x]
    return list(x)


def spatial_shape(features: Sequence[Tensor]) -> Tuple[int, int]:
    """Common (rows, cols) of every channel; ShapeMismatchError otherwise"""
    if not features:
        raise ShapeMismatchError("Feature map has no channels")
    shape = features[0].shape
    for c, channel in enumerate(features):
        if channel.shape != shape:
            raise ShapeMismatchError(
                f"Channel {c} has shape {channel.shape}, expected {shape}")
    return shape


def stack(features: Sequence[Tensor]) -> np.ndarray:
    """(channels, rows, cols) view of a feature map for vectorised loops"""
    spatial_shape(features)
    return np.stack([f.data for f in features])


def unstack(arr: np.ndarray) -> FeatureMap:
    return [Tensor.from_array(a) for a in arr]


class Parameter(Tensor):
    """Trainable tensor with its own Adam moment state and last gradient"""

    def __init__(self, data, config: AdamConfig = AdamConfig()):
        arr = np.asarray(data, dtype=np.float64)
        super().__init__(arr.shape[0], arr.shape[1], arr)
        self.grad: Optional[Tensor] = None
        self.state = AdamState(self.shape, config)

    def zero_grad(self):
        self.grad = None

    def update(self, learning_rate: float):
        if self.grad is None:
            return
        self.state.update(self, self.grad, learning_rate)
        # a gradient is applied once; the next update needs a new backward
        self.zero_grad()


class ForwardCache:
    """
    Input/output retained between a forward call and its matching backward.

    Single-use: ``store`` refuses to overwrite an entry that no backward has
    consumed yet, and ``take`` hands the entry out exactly once.
    """

    def __init__(self, owner: str):
        self.owner = owner
        self._entry: Optional[Dict[str, Any]] = None

    @property
    def pending(self) -> bool:
        return self._entry is not None

    def store(self, **items):
        if self._entry is not None:
            raise PassOrderError(
                f"{self.owner}: forward called again before backward consumed the previous pass")
        self._entry = items

    def take(self) -> Dict[str, Any]:
        if self._entry is None:
            raise PassOrderError(f"{self.owner}: backward called without a pending forward pass")
        entry, self._entry = self._entry, None
        return entry

    def clear(self):
        self._entry = None


class Module:
    def __init__(self):
        self._parameters: Dict[str, Parameter] = {}
        self._modules: Dict[str, Module] = {}

    def __setattr__(self, name: str, value):
        if isinstance(value, Parameter):
            self.__dict__.setdefault('_parameters', {})
            self._parameters[name] = value
        elif isinstance(value, Module):
            self.__dict__.setdefault('_modules', {})
            self._modules[name] = value
        object.__setattr__(self, name, value)

    def parameters(self) -> Iterator[Parameter]:
        for p in self._parameters.values():
            yield p
        for m in self._modules.values():
            yield from m.parameters()

    def modules(self) -> Iterator['Module']:
        for m in self._modules.values():
            yield m
            yield from m.modules()

    def zero_grad(self):
        for p in self.parameters():
            p.zero_grad()

    def update(self, learning_rate: float):
        """Apply Adam to every parameter that received a gradient"""
        check_learning_rate(learning_rate)
        for p in self.parameters():
            p.update(learning_rate)

    def clear_cache(self):
        for m in [self, *self.modules()]:
            cache = m.__dict__.get('cache')
            if isinstance(cache, ForwardCache):
                cache.clear()

    def count_parameters(self) -> int:
        return sum(p.size for p in self.parameters())

    num_parameters = count_parameters

    def summary(self) -> str:
        return f"{type(self).__name__}\n"

    def __call__(self, *args, **kwargs):
        return self.forward(*args, **kwargs)

    def forward(self, *args, **kwargs):  # to be overridden
        raise NotImplementedError

    def backward(self, *args, **kwargs):  # to be overridden
        raise NotImplementedError


class Linear(Module):
    """
    Fully-connected layer: y = act(x @ W + b)
    Input (rows, in_features) -> output (rows, out_features)
    """
    def __init__(self, in_features: int, out_features: int, activation: str = 'linear',
                 adam_config: AdamConfig = AdamConfig(),
                 rng: Optional[np.random.Generator] = None,
                 relu_threshold: float = 0.0):
        super().__init__()
        rng = rng if rng is not None else np.random.default_rng()
        self.in_features = in_features
        self.out_features = out_features
        self.activation: ActivationFn = get_activation(activation, relu_threshold)
        # Kaiming uniform
        limit = math.sqrt(6 / in_features)
        self.weight = Parameter((rng.random((in_features, out_features)) * 2 - 1) * limit,
                                adam_config)
        self.bias = Parameter(np.zeros((1, out_features)), adam_config)
        self.cache = ForwardCache('Linear')

    def forward(self, x: Tensor) -> Tensor:
        if x.cols != self.in_features:
            raise ShapeMismatchError(
                f"Linear expects {self.in_features} input features, got {x.cols}")
        z = Tensor.from_array(x.data @ self.weight.data + self.bias.data)
        out = self.activation.forward(z.copy())
        self.cache.store(input=x, output=out, pre_activation=z)
        return out

    def backward(self, grad_output: Tensor) -> Tensor:
        cached = self.cache.take()
        x, out = cached['input'], cached['output']
        if grad_output.shape != out.shape:
            raise ShapeMismatchError(
                f"Linear backward: gradient {grad_output.shape} vs output {out.shape}")
        delta = self.activation.derivative(out, grad_output, cached['pre_activation'])
        self.weight.grad = Tensor.from_array(x.data.T @ delta.data)
        self.bias.grad = Tensor.from_array(delta.data.sum(axis=0, keepdims=True))
        return Tensor.from_array(delta.data @ self.weight.data.T)

    def summary(self) -> str:
        return (f"    Linear: {self.in_features} -> {self.out_features}\n"
                f"    Activation: {self.activation.name}\n")


class Softmax(Module):
    """Row-wise softmax, shifted by the row maximum for numerical stability"""

    def __init__(self):
        super().__init__()
        self.cache = ForwardCache('Softmax')

    def forward(self, x: Tensor) -> Tensor:
        shifted = x.data - x.data.max(axis=1, keepdims=True)
        exp = np.exp(shifted)
        out = Tensor.from_array(exp / exp.sum(axis=1, keepdims=True))
        self.cache.store(output=out)
        return out

    def backward(self, grad_output: Tensor) -> Tensor:
        s = self.cache.take()['output'].data
        g = grad_output.data
        # Jacobian-vector product per row: s * (g - <g, s>)
        return Tensor.from_array(s * (g - np.sum(g * s, axis=1, keepdims=True)))

    def summary(self) -> str:
        return "    Softmax\n"
