"""
Loss functions for U-Net segmentation
Implements Dice Loss and Mean Squared Error, each paired with a gradient
"""
from __future__ import annotations

from enum import Enum
from typing import Callable, NamedTuple, Union

import numpy as np

from .errors import ShapeMismatchError, UnsupportedOptionError
from .tensor import Tensor


def _check_shapes(prediction: Tensor, target: Tensor, name: str):
    if prediction.shape != target.shape:
        raise ShapeMismatchError(
            f"{name}: prediction shape {prediction.shape} must match target shape {target.shape}")


def dice_loss(prediction: Tensor, target: Tensor, threshold: float = 0.9) -> float:
    """
    Dice Loss for binary masks

    Implements: L_Dice = 1 - 2·|P ∩ T| / (|P ∪ T| + |P ∩ T|)

    A prediction pixel counts as foreground when it is >= ``threshold``; a
    target pixel when it equals 1. With both masks empty the loss is 0.

    Args:
        prediction: Predicted mask (values in [0, 1])
        target: Ground truth binary mask
        threshold: Foreground cut-off for the prediction

    Returns:
        Dice loss in [0, 1]
    """
    _check_shapes(prediction, target, 'dice_loss')
    pred_fg = prediction.data >= threshold
    target_fg = target.data == 1
    intersection = float(np.sum(pred_fg & target_fg))
    union = float(np.sum(pred_fg | target_fg))
    if union + intersection == 0:
        return 0.0
    dice = 2.0 * intersection / (union + intersection)
    return 1.0 - dice


def dice_loss_gradient(prediction: Tensor, target: Tensor) -> Tensor:
    """
    Gradient of the soft Dice loss w.r.t. the prediction

    Implements: ∂L/∂p_i = -2·t_i / (Σt + Σp)²
    """
    _check_shapes(prediction, target, 'dice_loss_gradient')
    denom = (target.sum() + prediction.sum()) ** 2
    if denom == 0:
        return Tensor(*target.shape)
    return Tensor.from_array(-2.0 * target.data / denom)


def mse_loss(prediction: Tensor, target: Tensor) -> float:
    """Mean of squared differences"""
    _check_shapes(prediction, target, 'mse_loss')
    return float(np.mean((prediction.data - target.data) ** 2))


def mse_loss_gradient(prediction: Tensor, target: Tensor) -> Tensor:
    _check_shapes(prediction, target, 'mse_loss_gradient')
    return prediction.sub(target)


class LossFunction(Enum):
    DICE = 'dice'
    MSE = 'mse'


class LossPair(NamedTuple):
    name: str
    loss: Callable[[Tensor, Tensor], float]
    gradient: Callable[[Tensor, Tensor], Tensor]


LOSS_FUNCTIONS = {
    LossFunction.DICE: LossPair('dice', dice_loss, dice_loss_gradient),
    LossFunction.MSE: LossPair('mse', mse_loss, mse_loss_gradient),
}


def get_loss(name: Union[str, LossFunction]) -> LossPair:
    """Resolve a loss identifier ('dice', 'mse') to its (loss, gradient) pair"""
    if isinstance(name, LossFunction):
        return LOSS_FUNCTIONS[name]
    try:
        return LOSS_FUNCTIONS[LossFunction(str(name).lower())]
    except ValueError:
        raise UnsupportedOptionError(f"Unknown loss function: {name}") from None


def iou_score(prediction: Tensor, target: Tensor, threshold: float = 0.5) -> float:
    """
    Intersection over Union of the thresholded prediction and a binary target

    IoU = |A ∩ B| / |A ∪ B|; 1.0 when both masks are empty
    """
    _check_shapes(prediction, target, 'iou_score')
    pred_fg = prediction.data >= threshold
    target_fg = target.data >= 0.5
    union = np.sum(pred_fg | target_fg)
    if union == 0:
        return 1.0
    return float(np.sum(pred_fg & target_fg) / union)
