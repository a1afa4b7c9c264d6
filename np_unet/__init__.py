from .errors import (UNetError, ShapeMismatchError, IndexOutOfRangeError,
                     InvalidHyperparameterError, UnsupportedOptionError, PassOrderError)
from .tensor import Tensor, zeros, ones, full, randn, rand, resize_adjoint
from .activations import relu, sigmoid, identity, get_activation
from .losses import dice_loss, dice_loss_gradient, mse_loss, mse_loss_gradient, get_loss, iou_score
from .optim import Adam, AdamConfig, AdamState
from .nn import Module, Parameter, ForwardCache, Linear, Softmax
from .conv_layers import Conv2D, TransposeConv2D, MaxPool2D, Upsample2D
from .unet import Encoder, Decoder, UNet, UNetState, create_unet, new_unet
from .config import DEFAULT_CONFIG, load_config, load_yaml_config, create_unet_from_config
from .train import UNetTrainer

__all__ = [
    'UNetError', 'ShapeMismatchError', 'IndexOutOfRangeError',
    'InvalidHyperparameterError', 'UnsupportedOptionError', 'PassOrderError',
    'Tensor', 'zeros', 'ones', 'full', 'randn', 'rand', 'resize_adjoint',
    'relu', 'sigmoid', 'identity', 'get_activation',
    'dice_loss', 'dice_loss_gradient', 'mse_loss', 'mse_loss_gradient', 'get_loss', 'iou_score',
    'Adam', 'AdamConfig', 'AdamState',
    'Module', 'Parameter', 'ForwardCache', 'Linear', 'Softmax',
    'Conv2D', 'TransposeConv2D', 'MaxPool2D', 'Upsample2D',
    'Encoder', 'Decoder', 'UNet', 'UNetState', 'create_unet', 'new_unet',
    'DEFAULT_CONFIG', 'load_config', 'load_yaml_config', 'create_unet_from_config',
    'UNetTrainer',
]
