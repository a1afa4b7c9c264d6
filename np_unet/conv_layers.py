"""
Convolutional layers for U-Net implementation
Forward and hand-derived backward passes over per-channel feature maps
"""
from __future__ import annotations

import logging
import math
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from .activations import ActivationFn, get_activation
from .errors import InvalidHyperparameterError, ShapeMismatchError
from .nn import FeatureMap, ForwardCache, Module, Parameter, as_feature_map, stack, unstack
from .optim import AdamConfig
from .tensor import Tensor

logger = logging.getLogger(__name__)

Gradient = Union[Tensor, Sequence[Tensor]]


def _positive(name: str, value: int) -> int:
    if int(value) != value or value < 1:
        raise InvalidHyperparameterError(f"{name} must be a positive integer, got {value}")
    return int(value)


def _grad_stack(grad: Gradient, channels: int, shape: Tuple[int, int], owner: str) -> np.ndarray:
    """
    Stack an output gradient into (channels, rows, cols).

    A single Tensor is reused for every channel.
    """
    grads = as_feature_map(grad)
    if len(grads) == 1 and channels > 1:
        grads = grads * channels
    if len(grads) != channels:
        raise ShapeMismatchError(f"{owner}: expected {channels} gradient channels, got {len(grads)}")
    arr = stack(grads)
    if arr.shape[1:] != shape:
        raise ShapeMismatchError(
            f"{owner}: gradient shape {arr.shape[1:]} does not match output shape {shape}")
    return arr


class _KernelLayer(Module):
    """
    Shared parameter handling for Conv2D and TransposeConv2D.

    The weight tensor is (K·K·C_in) x F; row ``m·K·C_in + n·C_in + c`` holds
    the weight of kernel offset (m, n) on input channel c.
    """
    def __init__(self, in_channels: int, num_filters: int, kernel_size: int,
                 activation: str, adam_config: AdamConfig,
                 rng: Optional[np.random.Generator], relu_threshold: float,
                 weights: Optional[Tensor], bias: Optional[Tensor]):
        super().__init__()
        self.in_channels = _positive('in_channels', in_channels)
        self.num_filters = _positive('num_filters', num_filters)
        self.kernel_size = _positive('kernel_size', kernel_size)
        self.activation: ActivationFn = get_activation(activation, relu_threshold)

        rows = self.kernel_size * self.kernel_size * self.in_channels
        if weights is None:
            # He initialization
            rng = rng if rng is not None else np.random.default_rng()
            weights = Tensor.from_array(rng.standard_normal((rows, self.num_filters))
                                        * math.sqrt(2.0 / rows))
        if weights.shape != (rows, self.num_filters):
            raise ShapeMismatchError(
                f"Weights must be {rows}x{self.num_filters}, got {weights.shape}")
        if bias is None:
            bias = Tensor(1, self.num_filters)
        if bias.shape != (1, self.num_filters):
            raise ShapeMismatchError(f"Bias must be 1x{self.num_filters}, got {bias.shape}")

        self.weight = Parameter(weights.data, adam_config)
        self.bias = Parameter(bias.data, adam_config)
        self.cache = ForwardCache(type(self).__name__)

    def _kernel(self) -> np.ndarray:
        k = self.kernel_size
        return self.weight.data.reshape(k, k, self.in_channels, self.num_filters)

    def _check_input(self, x: Gradient) -> np.ndarray:
        features = as_feature_map(x)
        if len(features) != self.in_channels:
            raise ShapeMismatchError(
                f"{type(self).__name__} expects {self.in_channels} input channels, got {len(features)}")
        return stack(features)

    def _activate(self, z: np.ndarray) -> FeatureMap:
        out = unstack(z)
        for channel in out:
            self.activation.forward(channel)
        return out

    def _delta(self, grad: np.ndarray, out: FeatureMap, z: np.ndarray) -> np.ndarray:
        derivative = self.activation.derivative
        return np.stack([derivative(o, Tensor.from_array(g), Tensor.from_array(zc)).data
                         for o, g, zc in zip(out, grad, z)])

    def summary(self) -> str:
        summary = f"    Activation: {self.activation.name}\n"
        summary += f"    KernelSize: {self.kernel_size}\n"
        summary += f"    InputChannels: {self.in_channels}\n"
        summary += f"    NumFilters: {self.num_filters}\n"
        return summary


class Conv2D(_KernelLayer):
    """
    Valid (unpadded) 2D convolution, one output channel per filter
    Implements: Z_k = act(Σ_{m,n,c} X_c[i+m, j+n] · W[m,n,c,k] + b_k)
    Output size: (H - K + 1) x (W - K + 1)
    """
    def __init__(self, in_channels: int, num_filters: int, kernel_size: int = 3,
                 activation: str = 'relu', adam_config: AdamConfig = AdamConfig(),
                 rng: Optional[np.random.Generator] = None, relu_threshold: float = 0.0,
                 weights: Optional[Tensor] = None, bias: Optional[Tensor] = None):
        super().__init__(in_channels, num_filters, kernel_size, activation,
                         adam_config, rng, relu_threshold, weights, bias)

    def output_shape(self, rows: int, cols: int) -> Tuple[int, int]:
        return rows - self.kernel_size + 1, cols - self.kernel_size + 1

    def forward(self, x: Gradient) -> FeatureMap:
        """
        Input: feature map of in_channels tensors (H, W)
        Output: feature map of num_filters tensors (H-K+1, W-K+1)
        """
        x_data = self._check_input(x)
        _, in_h, in_w = x_data.shape
        out_h, out_w = self.output_shape(in_h, in_w)
        if out_h < 1 or out_w < 1:
            raise ShapeMismatchError(
                f"Conv2D input {in_h}x{in_w} is smaller than kernel {self.kernel_size}")

        kernel = self._kernel()
        z = np.zeros((self.num_filters, out_h, out_w), dtype=np.float64)
        for m in range(self.kernel_size):
            for n in range(self.kernel_size):
                receptive = x_data[:, m:m + out_h, n:n + out_w]
                z += np.einsum('chw,cf->fhw', receptive, kernel[m, n])
        z += self.bias.data.reshape(-1, 1, 1)

        out = self._activate(z)
        self.cache.store(input=x_data, output=out, pre_activation=z)
        logger.debug("Conv2D forward %s -> %s", x_data.shape, z.shape)
        return out

    def backward(self, grad_output: Gradient) -> Tuple[FeatureMap, Tensor, Tensor]:
        """
        Returns:
            (input gradient, weight gradient, bias gradient)
        """
        cached = self.cache.take()
        x_data, out, z = cached['input'], cached['output'], cached['pre_activation']
        grad = _grad_stack(grad_output, self.num_filters, out[0].shape, 'Conv2D')
        delta = self._delta(grad, out, z)
        _, out_h, out_w = delta.shape

        kernel = self._kernel()
        d_kernel = np.zeros_like(kernel)
        dx = np.zeros_like(x_data)
        for m in range(self.kernel_size):
            for n in range(self.kernel_size):
                receptive = x_data[:, m:m + out_h, n:n + out_w]
                d_kernel[m, n] = np.einsum('chw,fhw->cf', receptive, delta)
                dx[:, m:m + out_h, n:n + out_w] += np.einsum('cf,fhw->chw', kernel[m, n], delta)

        self.weight.grad = Tensor.from_array(d_kernel.reshape(self.weight.shape))
        self.bias.grad = Tensor.from_array(delta.sum(axis=(1, 2)).reshape(1, -1))
        logger.debug("Conv2D backward %s -> %s", delta.shape, dx.shape)
        return unstack(dx), self.weight.grad, self.bias.grad

    def summary(self) -> str:
        return "  Conv2D:\n" + super().summary()


class TransposeConv2D(_KernelLayer):
    """
    2D Transposed Convolution (learned up-sampling)
    Implements: Z[i·s + m, j·s + n] += X_c[i, j] · W[m,n,c,k], then + b_k
    Output size: ((H - 1)·stride + K) x ((W - 1)·stride + K)
    """
    def __init__(self, in_channels: int, num_filters: int, kernel_size: int = 2,
                 stride: int = 2, activation: str = 'relu',
                 adam_config: AdamConfig = AdamConfig(),
                 rng: Optional[np.random.Generator] = None, relu_threshold: float = 0.0,
                 weights: Optional[Tensor] = None, bias: Optional[Tensor] = None):
        super().__init__(in_channels, num_filters, kernel_size, activation,
                         adam_config, rng, relu_threshold, weights, bias)
        self.stride = _positive('stride', stride)

    def output_shape(self, rows: int, cols: int) -> Tuple[int, int]:
        return ((rows - 1) * self.stride + self.kernel_size,
                (cols - 1) * self.stride + self.kernel_size)

    def _window(self, m: int, n: int, in_h: int, in_w: int) -> Tuple[slice, slice]:
        # output cells touched by kernel offset (m, n) for every input cell
        return (slice(m, m + (in_h - 1) * self.stride + 1, self.stride),
                slice(n, n + (in_w - 1) * self.stride + 1, self.stride))

    def forward(self, x: Gradient) -> FeatureMap:
        x_data = self._check_input(x)
        _, in_h, in_w = x_data.shape
        out_h, out_w = self.output_shape(in_h, in_w)

        kernel = self._kernel()
        z = np.zeros((self.num_filters, out_h, out_w), dtype=np.float64)
        for m in range(self.kernel_size):
            for n in range(self.kernel_size):
                rows, cols = self._window(m, n, in_h, in_w)
                z[:, rows, cols] += np.einsum('chw,cf->fhw', x_data, kernel[m, n])
        z += self.bias.data.reshape(-1, 1, 1)

        out = self._activate(z)
        self.cache.store(input=x_data, output=out, pre_activation=z)
        logger.debug("TransposeConv2D forward %s -> %s", x_data.shape, z.shape)
        return out

    def backward(self, grad_output: Gradient) -> Tuple[FeatureMap, Tensor, Tensor]:
        cached = self.cache.take()
        x_data, out, z = cached['input'], cached['output'], cached['pre_activation']
        grad = _grad_stack(grad_output, self.num_filters, out[0].shape, 'TransposeConv2D')
        delta = self._delta(grad, out, z)
        _, in_h, in_w = x_data.shape

        kernel = self._kernel()
        d_kernel = np.zeros_like(kernel)
        dx = np.zeros_like(x_data)
        for m in range(self.kernel_size):
            for n in range(self.kernel_size):
                rows, cols = self._window(m, n, in_h, in_w)
                window = delta[:, rows, cols]
                d_kernel[m, n] = np.einsum('chw,fhw->cf', x_data, window)
                dx += np.einsum('cf,fhw->chw', kernel[m, n], window)

        self.weight.grad = Tensor.from_array(d_kernel.reshape(self.weight.shape))
        self.bias.grad = Tensor.from_array(delta.sum(axis=(1, 2)).reshape(1, -1))
        return unstack(dx), self.weight.grad, self.bias.grad

    def summary(self) -> str:
        return ("  TransposeConv2D:\n" + super().summary()
                + f"    Stride: {self.stride}\n")


class MaxPool2D(Module):
    """
    2D Max Pooling layer
    Implements: Z_pool^(l) = MaxPool_{P×P, stride S}(Z^(l))

    Output size is (H - P) // S + 1; trailing rows/columns that do not fill a
    whole window are dropped.
    """
    def __init__(self, pool_size: int = 2, stride: Optional[int] = None,
                 pass_through: bool = False):
        super().__init__()
        self.pool_size = _positive('pool_size', pool_size)
        self.stride = _positive('stride', stride if stride is not None else pool_size)
        self.pass_through = pass_through
        self.cache = ForwardCache('MaxPool2D')

    def output_shape(self, rows: int, cols: int) -> Tuple[int, int]:
        return ((rows - self.pool_size) // self.stride + 1,
                (cols - self.pool_size) // self.stride + 1)

    def forward(self, x: Gradient) -> FeatureMap:
        x_data = stack(as_feature_map(x))
        channels, in_h, in_w = x_data.shape
        if in_h < self.pool_size or in_w < self.pool_size:
            raise ShapeMismatchError(
                f"MaxPool2D input {in_h}x{in_w} is smaller than pool {self.pool_size}")
        out_h, out_w = self.output_shape(in_h, in_w)
        p, s = self.pool_size, self.stride

        out_data = np.zeros((channels, out_h, out_w), dtype=np.float64)
        # flat (row * in_w + col) index of the first maximum in each window
        argmax = np.zeros((channels, out_h, out_w), dtype=np.int64)
        for i in range(out_h):
            for j in range(out_w):
                h_start, w_start = i * s, j * s
                pool_region = x_data[:, h_start:h_start + p, w_start:w_start + p].reshape(channels, -1)
                pos = np.argmax(pool_region, axis=1)
                out_data[:, i, j] = pool_region[np.arange(channels), pos]
                argmax[:, i, j] = (h_start + pos // p) * in_w + (w_start + pos % p)

        self.cache.store(input_shape=x_data.shape, argmax=argmax)
        return unstack(out_data)

    def backward(self, grad_output: Gradient) -> FeatureMap:
        cached = self.cache.take()
        if self.pass_through:
            return as_feature_map(grad_output)
        channels, in_h, in_w = cached['input_shape']
        argmax = cached['argmax']
        grad = _grad_stack(grad_output, channels, argmax.shape[1:], 'MaxPool2D')

        dx = np.zeros((channels, in_h * in_w), dtype=np.float64)
        channel_idx = np.broadcast_to(np.arange(channels).reshape(-1, 1, 1), argmax.shape)
        np.add.at(dx, (channel_idx.ravel(), argmax.ravel()), grad.ravel())
        return unstack(dx.reshape(channels, in_h, in_w))

    def summary(self) -> str:
        ret = "  MaxPool2D:\n"
        ret += f"    PoolSize: {self.pool_size}\n"
        ret += f"    Stride: {self.stride}\n"
        return ret


class Upsample2D(Module):
    """
    Fixed nearest-neighbour up-sampling: every input cell is copied into a
    scale x scale block of the output. No trainable parameters.
    """
    def __init__(self, scale_factor: int = 2, pass_through: bool = False):
        super().__init__()
        self.scale_factor = _positive('scale_factor', scale_factor)
        self.pass_through = pass_through
        self.cache = ForwardCache('Upsample2D')

    def output_shape(self, rows: int, cols: int) -> Tuple[int, int]:
        return rows * self.scale_factor, cols * self.scale_factor

    def forward(self, x: Gradient) -> FeatureMap:
        x_data = stack(as_feature_map(x))
        s = self.scale_factor
        out = np.repeat(np.repeat(x_data, s, axis=1), s, axis=2)
        self.cache.store(input_shape=x_data.shape)
        return unstack(out)

    def backward(self, grad_output: Gradient) -> FeatureMap:
        channels, in_h, in_w = self.cache.take()['input_shape']
        if self.pass_through:
            return as_feature_map(grad_output)
        s = self.scale_factor
        grad = _grad_stack(grad_output, channels, (in_h * s, in_w * s), 'Upsample2D')
        # adjoint of the block copy: sum each block
        dx = grad.reshape(channels, in_h, s, in_w, s).sum(axis=(2, 4))
        return unstack(dx)

    def summary(self) -> str:
        return f"  Upsample2D:\n    ScaleFactor: {self.scale_factor}\n"
