from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Tuple

from .errors import InvalidHyperparameterError, ShapeMismatchError
from .tensor import Tensor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdamConfig:
    """
    Adam hyperparameters, fixed at layer construction.

    Plain Adam: no decoupled weight decay term is applied.
    """
    beta1: float = 0.9
    beta2: float = 0.999
    epsilon: float = 1e-8

    def __post_init__(self):
        for name in ('beta1', 'beta2'):
            value = getattr(self, name)
            if not 0.0 <= value < 1.0:
                raise InvalidHyperparameterError(f"{name} must be in [0, 1), got {value}")
        if not self.epsilon > 0:
            raise InvalidHyperparameterError(f"epsilon must be positive, got {self.epsilon}")


def check_learning_rate(learning_rate: float) -> float:
    lr = float(learning_rate)
    if not math.isfinite(lr) or lr <= 0:
        raise InvalidHyperparameterError(f"Learning rate must be positive, got {learning_rate}")
    return lr


class AdamState:
    """
    First/second moment accumulators and step counter for one parameter.
    ``m`` and ``v`` start at zero, ``t`` at 0 and grows by one per update.
    """

    def __init__(self, shape: Tuple[int, int], config: AdamConfig = AdamConfig()):
        self.config = config
        self.m = Tensor(*shape)
        self.v = Tensor(*shape)
        self.t = 0

    def update(self, param: Tensor, grad: Tensor, learning_rate: float) -> Tuple[Tensor, Tensor]:
        """
        Apply one Adam step to ``param`` in place.

        Returns:
            The bias-corrected moments (m_hat, v_hat)
        """
        # validate everything before touching any state
        lr = check_learning_rate(learning_rate)
        if grad.shape != param.shape or grad.shape != self.m.shape:
            raise ShapeMismatchError(
                f"Adam update: grad {grad.shape}, param {param.shape}, state {self.m.shape}")

        cfg = self.config
        self.t += 1
        g = grad.data
        g2 = g * g
        bc1 = 1 - cfg.beta1 ** self.t
        bc2 = 1 - cfg.beta2 ** self.t
        # bias correction folded into the coefficients: (1 - beta) / bc is
        # exactly 1.0 on the first step, so m_hat == g and v_hat == g*g there
        m_hat = Tensor.from_array(cfg.beta1 * self.m.data / bc1 + ((1 - cfg.beta1) / bc1) * g)
        v_hat = Tensor.from_array(cfg.beta2 * self.v.data / bc2 + ((1 - cfg.beta2) / bc2) * g2)
        self.m.data[...] = cfg.beta1 * self.m.data + (1 - cfg.beta1) * g
        self.v.data[...] = cfg.beta2 * self.v.data + (1 - cfg.beta2) * g2
        step = lr * m_hat.data / (v_hat.elementwise_sqrt().data + cfg.epsilon)
        param.data -= step
        return m_hat, v_hat


class Adam:
    """Owns one AdamState per parameter tensor"""

    def __init__(self, params: Iterable[Tensor], config: AdamConfig = AdamConfig()):
        self.params: List[Tensor] = list(params)
        self.states = [AdamState(p.shape, config) for p in self.params]

    def step(self, grads: Iterable[Tensor], learning_rate: float):
        grads = list(grads)
        if len(grads) != len(self.params):
            raise ShapeMismatchError(
                f"Expected {len(self.params)} gradients, got {len(grads)}")
        check_learning_rate(learning_rate)
        for param, grad in zip(self.params, grads):
            if param.shape != grad.shape:
                raise ShapeMismatchError(f"Adam step: grad {grad.shape} vs param {param.shape}")
        for param, grad, state in zip(self.params, grads, self.states):
            state.update(param, grad, learning_rate)
