import json
import math

import numpy as np
import pytest

from np_unet import UNetTrainer, create_unet


def _net(**kwargs):
    return create_unet(20, 1, 1, 2, learning_rate=0.01, rng=np.random.default_rng(0), **kwargs)


def test_train_until_stopped(disc):
    image, mask = disc
    net = _net(max_iterations=3)
    history = UNetTrainer(net).train(image, mask)
    assert net.stopped
    assert len(history['loss']) == 4
    assert len(history['step_time']) == 4
    assert all(math.isfinite(v) for v in history['loss'])


def test_train_max_steps(disc):
    image, mask = disc
    net = _net()
    trainer = UNetTrainer(net, log_every=1)
    trainer.train(image, mask, max_steps=2)
    trainer.train(image, mask, max_steps=1)
    assert net.steps == 3
    assert len(trainer.history['loss']) == 3
    assert not net.stopped


def test_train_learning_rate_override(disc):
    image, mask = disc
    net = _net()
    with pytest.raises(ValueError):
        UNetTrainer(net).train(image, mask, max_steps=1, learning_rate=0.0)
    assert net.steps == 0


def test_save_history(disc, tmp_path):
    image, mask = disc
    trainer = UNetTrainer(_net())
    trainer.train(image, mask, max_steps=2)
    path = tmp_path / 'history.json'
    trainer.save_history(str(path))
    saved = json.loads(path.read_text())
    assert saved['loss'] == trainer.history['loss']
    assert set(saved) == {'loss', 'step_time'}
