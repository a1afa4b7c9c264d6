"""
Training loop for single-sample U-Net segmentation
"""
from __future__ import annotations

import json
import logging
import time
from typing import Dict, List, Optional

from .tensor import Tensor
from .unet import UNet

logger = logging.getLogger(__name__)


class UNetTrainer:
    """
    Trainer class for U-Net model

    Steps the network on one (input, target) pair until it stops or
    ``max_steps`` is reached, recording loss and step time.
    """

    def __init__(self, model: UNet, log_every: int = 10):
        self.model = model
        self.log_every = max(1, int(log_every))
        self.history: Dict[str, List[float]] = {
            'loss': [],
            'step_time': [],
        }

    def train(self, x, target: Tensor, max_steps: Optional[int] = None,
              learning_rate: Optional[float] = None) -> Dict[str, List[float]]:
        """
        Train until the network stops

        Args:
            x: Input tensor or feature map
            target: Ground truth mask
            max_steps: Optional cap on the number of steps in this call
            learning_rate: Overrides the model's learning rate

        Returns:
            Training history
        """
        logger.info("Starting U-Net training: %s", self.model.get_config())
        logger.info("Number of parameters: %d", self.model.count_parameters())

        steps = 0
        while not self.model.stopped and (max_steps is None or steps < max_steps):
            start_time = time.time()
            loss = self.model.step(x, target, learning_rate)
            step_time = time.time() - start_time
            steps += 1

            self.history['loss'].append(loss)
            self.history['step_time'].append(step_time)
            if steps % self.log_every == 0:
                logger.info("Step %d, Loss: %.4f, Time: %.3fs", self.model.steps, loss, step_time)

        if self.history['loss']:
            logger.info("Training finished after %d steps, final loss %.4f",
                        self.model.steps, self.history['loss'][-1])
        return self.history

    def save_history(self, path: str):
        with open(path, 'w') as f:
            json.dump(self.history, f, indent=2)
        logger.info("Training history saved to %s", path)
