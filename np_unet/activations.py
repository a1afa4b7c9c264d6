"""
Elementwise activation functions applied in place to a Tensor
"""
from __future__ import annotations

import logging
from enum import Enum
from functools import partial
from typing import Callable, Dict, NamedTuple, Union

import numpy as np

from .errors import UnsupportedOptionError
from .tensor import Tensor

logger = logging.getLogger(__name__)


def relu(t: Tensor, threshold: float = 0.0) -> Tensor:
    """Zero every value below ``threshold`` (in place)"""
    t.data[t.data < threshold] = 0.0
    return t


def sigmoid(t: Tensor) -> Tensor:
    """1 / (1 + e^-x), element by element (in place)"""
    t.data[...] = 1.0 / (1.0 + np.exp(-t.data))
    return t


def identity(t: Tensor) -> Tensor:
    return t


# derivatives take the activation's output and its pre-activation input,
# both of which the layers keep in their forward cache
def relu_derivative(output: Tensor, grad: Tensor, pre_activation: Tensor,
                    threshold: float = 0.0) -> Tensor:
    """Pass ``grad`` where the pre-activation reached ``threshold``"""
    return Tensor.from_array(grad.data * (pre_activation.data >= threshold))


def sigmoid_derivative(output: Tensor, grad: Tensor, pre_activation: Tensor) -> Tensor:
    s = output.data
    return Tensor.from_array(grad.data * s * (1.0 - s))


def identity_derivative(output: Tensor, grad: Tensor, pre_activation: Tensor) -> Tensor:
    return grad.copy()


class Activation(Enum):
    RELU = 'relu'
    SIGMOID = 'sigmoid'
    LINEAR = 'linear'


class ActivationFn(NamedTuple):
    name: str
    forward: Callable[[Tensor], Tensor]
    derivative: Callable[[Tensor, Tensor, Tensor], Tensor]


_DERIVATIVES: Dict[Activation, Callable[[Tensor, Tensor, Tensor], Tensor]] = {
    Activation.RELU: relu_derivative,
    Activation.SIGMOID: sigmoid_derivative,
    Activation.LINEAR: identity_derivative,
}

_ALIASES = {'none': Activation.LINEAR, 'identity': Activation.LINEAR}


def get_activation(name: Union[str, Activation], relu_threshold: float = 0.0) -> ActivationFn:
    """
    Resolve an activation identifier once, at construction time.

    Args:
        name: 'relu', 'sigmoid', 'linear' (aliases 'none', 'identity') or an
            Activation member
        relu_threshold: values below this are clipped to zero by ReLU

    Raises:
        UnsupportedOptionError: unknown identifier
    """
    if isinstance(name, Activation):
        member = name
    else:
        key = str(name).lower()
        if key in _ALIASES:
            member = _ALIASES[key]
        else:
            try:
                member = Activation(key)
            except ValueError:
                raise UnsupportedOptionError(f"Unknown activation: {name}") from None

    derivative = _DERIVATIVES[member]
    if member is Activation.RELU:
        forward = partial(relu, threshold=relu_threshold)
        derivative = partial(relu_derivative, threshold=relu_threshold)
    elif member is Activation.SIGMOID:
        forward = sigmoid
    else:
        forward = identity
    logger.debug("Resolved activation %s", member.value)
    return ActivationFn(member.value, forward, derivative)
