"""
U-Net Architecture
Implements the encoder-decoder structure with skip connections, the manual
backward pass and the single-sample training step
"""
from __future__ import annotations

import logging
import math
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from .activations import get_activation
from .conv_layers import Conv2D, MaxPool2D, TransposeConv2D
from .errors import InvalidHyperparameterError, PassOrderError, ShapeMismatchError, UnsupportedOptionError
from .losses import LossFunction, get_loss
from .nn import FeatureMap, ForwardCache, Module, as_feature_map, spatial_shape
from .optim import AdamConfig, check_learning_rate
from .tensor import Tensor, resize_adjoint

logger = logging.getLogger(__name__)

Features = Union[Tensor, Sequence[Tensor]]


def _add_maps(a: FeatureMap, b: FeatureMap) -> FeatureMap:
    if len(a) != len(b):
        raise ShapeMismatchError(f"Cannot add feature maps with {len(a)} and {len(b)} channels")
    return [x.add(y) for x, y in zip(a, b)]


class Encoder(Module):
    """
    Encoder stage: Conv -> Conv -> MaxPool
    Implements the contracting path (down-sampling)
    """
    def __init__(self, in_channels: int, num_filters: int, kernel_size: int,
                 activation: str, pool_size: int, pool_stride: int,
                 num_convs: int = 2, adam_config: AdamConfig = AdamConfig(),
                 rng: Optional[np.random.Generator] = None, relu_threshold: float = 0.0):
        super().__init__()
        self.conv_layers: List[Conv2D] = []
        channels = in_channels
        for i in range(num_convs):
            conv = Conv2D(channels, num_filters, kernel_size, activation,
                          adam_config=adam_config, rng=rng, relu_threshold=relu_threshold)
            self.conv_layers.append(conv)
            setattr(self, f'conv_{i}', conv)
            channels = num_filters
        # by convention exactly one pooling stage
        self.pool_layers: List[MaxPool2D] = [MaxPool2D(pool_size, pool_stride)]
        self.pool_0 = self.pool_layers[0]
        self.num_filters = num_filters

    def output_shape(self, rows: int, cols: int) -> Tuple[int, int]:
        for conv in self.conv_layers:
            rows, cols = conv.output_shape(rows, cols)
        for pool in self.pool_layers:
            rows, cols = pool.output_shape(rows, cols)
        return rows, cols

    def forward(self, x: Features) -> FeatureMap:
        x = as_feature_map(x)
        for conv in self.conv_layers:
            x = conv(x)
        for pool in self.pool_layers:
            x = pool(x)
        return x

    def backward(self, grad_output: FeatureMap) -> FeatureMap:
        grad = grad_output
        for pool in reversed(self.pool_layers):
            grad = pool.backward(grad)
        for conv in reversed(self.conv_layers):
            grad, _, _ = conv.backward(grad)
        return grad

    def summary(self) -> str:
        summary = "Encoder:\n"
        for i, conv in enumerate(self.conv_layers):
            summary += f"  ConvLayer {i}:\n" + conv.summary()
        for i, pool in enumerate(self.pool_layers):
            summary += f"  PoolLayer {i}:\n" + pool.summary()
        return summary


class Decoder(Module):
    """
    Decoder stage: TransposeConv -> Concat(skip) -> Conv -> Conv
    Implements the expanding path (up-sampling)

    With ``up_stride=None`` no up-sampling layer is built and no skip is
    expected: this is the bottleneck at the bottom of the U.
    """
    def __init__(self, in_channels: int, num_filters: int, kernel_size: int,
                 activation: str, up_stride: Optional[int] = None,
                 skip_channels: int = 0, num_convs: int = 2,
                 adam_config: AdamConfig = AdamConfig(),
                 rng: Optional[np.random.Generator] = None, relu_threshold: float = 0.0):
        super().__init__()
        self.upsample_layers: List[TransposeConv2D] = []
        channels = in_channels
        if up_stride is not None:
            up = TransposeConv2D(in_channels, num_filters, kernel_size, up_stride, activation,
                                 adam_config=adam_config, rng=rng, relu_threshold=relu_threshold)
            self.upsample_layers.append(up)
            self.up_0 = up
            channels = num_filters
        self.skip_channels = skip_channels
        channels += skip_channels

        self.conv_layers: List[Conv2D] = []
        for i in range(num_convs):
            conv = Conv2D(channels, num_filters, kernel_size, activation,
                          adam_config=adam_config, rng=rng, relu_threshold=relu_threshold)
            self.conv_layers.append(conv)
            setattr(self, f'conv_{i}', conv)
            channels = num_filters
        self.num_filters = num_filters
        self.cache = ForwardCache('Decoder')

    def output_shape(self, rows: int, cols: int) -> Tuple[int, int]:
        for up in self.upsample_layers:
            rows, cols = up.output_shape(rows, cols)
        for conv in self.conv_layers:
            rows, cols = conv.output_shape(rows, cols)
        return rows, cols

    def forward(self, x: Features, skip: Optional[Features] = None) -> FeatureMap:
        """
        Args:
            x: Input from the previous decoder (or the last encoder)
            skip: Skip connection from the mirrored encoder

        Implements: Z_concat^(l) = Concat(Z_up^(l), Resize(Z_encoder^(l)))
        """
        x = as_feature_map(x)
        for up in self.upsample_layers:
            x = up(x)
        upsampled_channels = len(x)

        skip_shape = None
        if skip is not None:
            skip = as_feature_map(skip)
            skip_shape = spatial_shape(skip)
            rows, cols = spatial_shape(x)
            # bilinear resize absorbs the size drift between the two paths
            x = x + [feature.resize(rows, cols) for feature in skip]

        for conv in self.conv_layers:
            x = conv(x)
        self.cache.store(upsampled_channels=upsampled_channels, skip_shape=skip_shape)
        return x

    def backward(self, grad_output: FeatureMap) -> Tuple[FeatureMap, Optional[FeatureMap]]:
        """
        Returns:
            (gradient w.r.t. the decoder input, gradient w.r.t. the skip
            feature at its original size or None)
        """
        cached = self.cache.take()
        grad = grad_output
        for conv in reversed(self.conv_layers):
            grad, _, _ = conv.backward(grad)

        n_up = cached['upsampled_channels']
        skip_grad = None
        if cached['skip_shape'] is not None:
            src_rows, src_cols = cached['skip_shape']
            skip_grad = [resize_adjoint(g, src_rows, src_cols) for g in grad[n_up:]]
            grad = grad[:n_up]

        for up in reversed(self.upsample_layers):
            grad, _, _ = up.backward(grad)
        return grad, skip_grad

    def summary(self) -> str:
        summary = "Decoder:\n"
        for i, conv in enumerate(self.conv_layers):
            summary += f"  ConvLayer {i}:\n" + conv.summary()
        for i, up in enumerate(self.upsample_layers):
            summary += f"  UpsampleLayer {i}:\n" + up.summary()
        return summary


class UNetState(Enum):
    CONSTRUCTED = 'constructed'
    STEPPING = 'stepping'
    STOPPED = 'stopped'


GRADIENT_SEEDS = ('scaled_error', 'loss_gradient')


class UNet(Module):
    """
    U-Net for single-sample, single-channel-output segmentation

    Architecture:
        Encoder (Contracting Path):
            - num_en_decoders stages of [Conv-Conv-MaxPool]
            - filters doubled at each stage, starting at max_filters
        Bottleneck:
            - [Conv-Conv], no skip connection
        Decoder (Expanding Path):
            - num_en_decoders stages of [TransposeConv-Concat-Conv-Conv]
            - decoder i mirrors encoder i and consumes its output as skip
        Output:
            - optional 1x1 Conv with sigmoid to one channel

    Lifecycle: CONSTRUCTED -> STEPPING -> STOPPED. The network stops once
    ``steps > max_iterations`` or ``loss < loss_tolerance``.
    """
    def __init__(self, input_size: int, input_channels: int = 1, num_en_decoders: int = 2,
                 max_filters: int = 8, activation: str = 'relu', kernel_size: int = 3,
                 pool_size: int = 2, pool_stride: int = 2, learning_rate: float = 0.001,
                 loss_function: Union[str, LossFunction] = 'mse',
                 loss_tolerance: float = 0.0, max_iterations: int = 1000,
                 relu_threshold: float = 0.0, use_final_conv: bool = True,
                 gradient_seed: str = 'scaled_error',
                 adam_config: Optional[AdamConfig] = None,
                 rng: Optional[np.random.Generator] = None, seed: Optional[int] = None):
        super().__init__()
        for name, value in (('input_size', input_size), ('input_channels', input_channels),
                            ('num_en_decoders', num_en_decoders), ('max_filters', max_filters),
                            ('kernel_size', kernel_size), ('pool_size', pool_size),
                            ('pool_stride', pool_stride)):
            if int(value) != value or value < 1:
                raise InvalidHyperparameterError(f"{name} must be a positive integer, got {value}")
        if max_iterations < 0:
            raise InvalidHyperparameterError(f"max_iterations must be >= 0, got {max_iterations}")
        if gradient_seed not in GRADIENT_SEEDS:
            raise UnsupportedOptionError(
                f"Unknown gradient seed: {gradient_seed} (expected one of {GRADIENT_SEEDS})")

        # resolve identifiers up front so configuration errors surface here
        get_activation(activation, relu_threshold)
        self.loss_fn = get_loss(loss_function)

        self.input_size = input_size
        self.input_channels = input_channels
        self.num_en_decoders = num_en_decoders
        self.max_filters = max_filters
        self.activation = activation
        self.kernel_size = kernel_size
        self.pool_size = pool_size
        self.pool_stride = pool_stride
        self.learning_rate = check_learning_rate(learning_rate)
        self.loss_tolerance = float(loss_tolerance)
        self.max_iterations = int(max_iterations)
        self.relu_threshold = relu_threshold
        self.use_final_conv = use_final_conv
        self.gradient_seed = gradient_seed
        self.adam_config = adam_config if adam_config is not None else AdamConfig()

        rng = rng if rng is not None else np.random.default_rng(seed)
        layer_kwargs = dict(adam_config=self.adam_config, rng=rng, relu_threshold=relu_threshold)

        # Encoder path
        self.encoders: List[Encoder] = []
        channels, filters = input_channels, max_filters
        for i in range(num_en_decoders):
            enc = Encoder(channels, filters, kernel_size, activation, pool_size, pool_stride,
                          **layer_kwargs)
            self.encoders.append(enc)
            setattr(self, f'encoder_{i}', enc)
            channels, filters = filters, filters * 2

        # Bottleneck (bottom of U)
        self.bottleneck = Decoder(channels, filters, kernel_size, activation, **layer_kwargs)

        # Decoder path: decoders[i] mirrors encoders[i]
        self.decoders: List[Decoder] = [None] * num_en_decoders
        channels = filters
        for i in reversed(range(num_en_decoders)):
            filters //= 2
            dec = Decoder(channels, filters, kernel_size, activation, up_stride=pool_stride,
                          skip_channels=filters, **layer_kwargs)
            self.decoders[i] = dec
            setattr(self, f'decoder_{i}', dec)
            channels = filters

        self.final_conv: Optional[Conv2D] = None
        if use_final_conv:
            self.final_conv = Conv2D(channels, 1, 1, 'sigmoid', adam_config=self.adam_config, rng=rng)

        self.output_size = self._trace_shapes()

        self.state = UNetState.CONSTRUCTED
        self._steps = 0
        self._loss = math.inf
        self._pending_backward = False

    # ----- construction helpers -----
    def _trace_shapes(self) -> Tuple[int, int]:
        """Spatial size after every stage; fails if any stage collapses"""
        shape = (self.input_size, self.input_size)
        stages = ([(f'encoder_{i}', enc) for i, enc in enumerate(self.encoders)]
                  + [('bottleneck', self.bottleneck)]
                  + [(f'decoder_{i}', self.decoders[i]) for i in reversed(range(self.num_en_decoders))])
        for name, stage in stages:
            shape = stage.output_shape(*shape)
            if shape[0] < 1 or shape[1] < 1:
                raise InvalidHyperparameterError(
                    f"input_size {self.input_size} is too small: {name} output would be {shape}")
            logger.debug("%s output shape %s", name, shape)
        return shape

    # ----- properties -----
    @property
    def steps(self) -> int:
        return self._steps

    @property
    def stopped(self) -> bool:
        return self.state is UNetState.STOPPED

    def get_loss(self) -> float:
        """Loss computed by the most recent step (inf before the first)"""
        return self._loss

    # ----- passes -----
    def forward(self, x: Features) -> FeatureMap:
        """
        Forward pass through U-Net

        Args:
            x: input_channels tensors of input_size x input_size

        Returns:
            Output feature map (one channel when the final conv is used)
        """
        if self._pending_backward:
            raise PassOrderError("forward called again before backward completed")
        x = as_feature_map(x)
        if len(x) != self.input_channels:
            raise ShapeMismatchError(f"Expected {self.input_channels} input channels, got {len(x)}")
        if spatial_shape(x) != (self.input_size, self.input_size):
            raise ShapeMismatchError(
                f"Expected {self.input_size}x{self.input_size} input, got {spatial_shape(x)}")

        try:
            # Encoder path - store skip connections
            skip_connections = []
            for encoder in self.encoders:
                x = encoder(x)
                skip_connections.append(x)

            # Bottleneck has no skip connection
            x = self.bottleneck(x)

            # Decoder path - innermost first
            for i in reversed(range(self.num_en_decoders)):
                x = self.decoders[i](x, skip_connections[i])

            if self.final_conv is not None:
                x = self.final_conv(x)
        except Exception:
            self.clear_cache()
            raise
        self._pending_backward = True
        return x

    def predict(self, x: Features) -> Tensor:
        """Forward pass without retaining anything for backward"""
        out = self.forward(x)
        self.clear_cache()
        self._pending_backward = False
        return out[0]

    def _seed_gradient(self, prediction: Tensor, target: Tensor, loss: float) -> Tensor:
        resized = prediction.resize(*target.shape)
        if self.gradient_seed == 'scaled_error':
            seed = target.sub(resized).scale(-loss)
        else:
            seed = self.loss_fn.gradient(resized, target)
        # back from the target grid onto the network output grid
        return resize_adjoint(seed, *prediction.shape)

    def backward(self, prediction: Features, target: Tensor, loss: float,
                 learning_rate: Optional[float] = None):
        """
        Backward pass through U-Net followed by the Adam update of every layer

        The output gradient is seeded with (target - prediction)·(-loss), or
        the loss gradient when ``gradient_seed='loss_gradient'``.
        """
        lr = check_learning_rate(learning_rate if learning_rate is not None else self.learning_rate)
        if not self._pending_backward:
            raise PassOrderError("backward called without a pending forward pass")
        try:
            prediction = as_feature_map(prediction)

            grad: FeatureMap = [self._seed_gradient(prediction[0], target, loss)]
            if self.final_conv is not None:
                grad, _, _ = self.final_conv.backward(grad)
            else:
                grad = grad + [Tensor(*grad[0].shape) for _ in prediction[1:]]

            # decoders were applied innermost first, so unwind outermost first
            skip_grads: List[Optional[FeatureMap]] = [None] * self.num_en_decoders
            for i in range(self.num_en_decoders):
                grad, skip_grads[i] = self.decoders[i].backward(grad)
            grad, _ = self.bottleneck.backward(grad)
            for i in reversed(range(self.num_en_decoders)):
                grad = _add_maps(grad, skip_grads[i])
                grad = self.encoders[i].backward(grad)
        except Exception:
            # the pass is abandoned: drop partial gradients and unconsumed caches
            self.clear_cache()
            self.zero_grad()
            self._pending_backward = False
            raise
        self._pending_backward = False

        if self.final_conv is not None:
            self.final_conv.update(lr)
        for decoder in self.decoders:
            decoder.update(lr)
        self.bottleneck.update(lr)
        for encoder in reversed(self.encoders):
            encoder.update(lr)
        return grad

    def step(self, x: Features, target: Tensor, learning_rate: Optional[float] = None) -> float:
        """
        One training step: forward, loss, backward and update

        Returns:
            The loss of this step
        """
        if self.stopped:
            raise PassOrderError(f"Network stopped after {self._steps} steps")
        lr = check_learning_rate(learning_rate if learning_rate is not None else self.learning_rate)
        self.state = UNetState.STEPPING

        output = self.forward(x)
        prediction = output[0].resize(*target.shape)
        loss = self.loss_fn.loss(prediction, target)
        if not math.isfinite(loss):
            logger.warning("Non-finite %s loss at step %d", self.loss_fn.name, self._steps + 1)
        logger.info("Step %d %s loss: %.6f", self._steps + 1, self.loss_fn.name, loss)

        self.backward(output, target, loss, lr)
        self._loss = loss
        self._steps += 1
        if self._steps > self.max_iterations or loss < self.loss_tolerance:
            self.state = UNetState.STOPPED
            logger.info("Stopping after %d steps (loss %.6f)", self._steps, loss)
        return loss

    # ----- introspection -----
    def get_config(self) -> dict:
        return {
            'input_size': self.input_size,
            'input_channels': self.input_channels,
            'num_en_decoders': self.num_en_decoders,
            'max_filters': self.max_filters,
            'activation': self.activation,
            'kernel_size': self.kernel_size,
            'pool_size': self.pool_size,
            'pool_stride': self.pool_stride,
            'learning_rate': self.learning_rate,
            'loss_function': self.loss_fn.name,
            'loss_tolerance': self.loss_tolerance,
            'max_iterations': self.max_iterations,
            'relu_threshold': self.relu_threshold,
            'use_final_conv': self.use_final_conv,
            'gradient_seed': self.gradient_seed,
        }

    def summary(self) -> str:
        """Text description of every layer's configuration"""
        summary = (f"UNet: input {self.input_size}x{self.input_size}x{self.input_channels}, "
                   f"output {self.output_size[0]}x{self.output_size[1]}, "
                   f"{self.count_parameters()} parameters\n")
        for encoder in self.encoders:
            summary += encoder.summary()
        summary += "Bottleneck " + self.bottleneck.summary()
        for i in reversed(range(self.num_en_decoders)):
            summary += self.decoders[i].summary()
        if self.final_conv is not None:
            summary += "Final ConvLayer:\n" + self.final_conv.summary()
        return summary


def create_unet(input_size: int, input_channels: int = 1, num_en_decoders: int = 2,
                max_filters: int = 8, activation: str = 'relu', kernel_size: int = 3,
                pool_size: int = 2, pool_stride: int = 2, learning_rate: float = 0.001,
                loss_function: str = 'mse', **kwargs) -> UNet:
    """
    Factory function to create U-Net with custom configuration

    Args:
        input_size: Side length of the (square) input
        input_channels: Number of input channels
        num_en_decoders: Number of encoder/decoder pairs
        max_filters: Filters of the first encoder stage, doubled per stage
        activation: 'relu' or 'sigmoid'
        kernel_size: Convolution (and transposed convolution) kernel size
        pool_size: Max-pooling window
        pool_stride: Max-pooling stride, also the up-sampling stride
        learning_rate: Default Adam learning rate
        loss_function: 'dice' or 'mse'
        **kwargs: loss_tolerance, max_iterations, relu_threshold,
            use_final_conv, gradient_seed, adam_config, rng, seed

    Returns:
        Configured U-Net model
    """
    return UNet(input_size, input_channels, num_en_decoders, max_filters, activation,
                kernel_size, pool_size, pool_stride, learning_rate, loss_function, **kwargs)


new_unet = create_unet
