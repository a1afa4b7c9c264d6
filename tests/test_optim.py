import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from np_unet import Adam, AdamConfig, AdamState, InvalidHyperparameterError, ShapeMismatchError, Tensor


def test_first_step_bias_correction():
    g = Tensor.from_array([[0.5, -2.0], [1e-3, 4.0]])
    param = Tensor(2, 2)
    state = AdamState(param.shape)
    m_hat, v_hat = state.update(param, g, 0.01)
    assert state.t == 1
    assert_array_equal(m_hat.data, g.data)
    assert_array_equal(v_hat.data, g.data * g.data)
    # first step moves each weight by about lr against the gradient sign
    assert_allclose(param.data, -0.01 * np.sign(g.data), rtol=1e-4)


def test_step_counter_grows():
    param = Tensor(1, 1)
    state = AdamState(param.shape)
    for _ in range(3):
        state.update(param, Tensor.from_array([[1.0]]), 0.1)
    assert state.t == 3


@pytest.mark.parametrize('lr', [0.0, -0.1, float('nan'), float('inf')])
def test_invalid_learning_rate_leaves_state_untouched(lr):
    param = Tensor.from_array([[1.0]])
    state = AdamState(param.shape)
    with pytest.raises(InvalidHyperparameterError):
        state.update(param, Tensor.from_array([[1.0]]), lr)
    assert state.t == 0
    assert state.m.sum() == 0.0
    assert param.get(0, 0) == 1.0


def test_shape_mismatch():
    state = AdamState((2, 2))
    with pytest.raises(ShapeMismatchError):
        state.update(Tensor(2, 2), Tensor(2, 3), 0.1)


@pytest.mark.parametrize('kwargs', [{'beta1': 1.0}, {'beta2': -0.1}, {'epsilon': 0.0}])
def test_adam_config_validation(kwargs):
    with pytest.raises(InvalidHyperparameterError):
        AdamConfig(**kwargs)


def test_custom_config_is_used():
    cfg = AdamConfig(beta1=0.5, beta2=0.5)
    state = AdamState((1, 1), cfg)
    state.update(Tensor(1, 1), Tensor.from_array([[2.0]]), 0.1)
    assert_allclose(state.m.data, [[1.0]])
    assert_allclose(state.v.data, [[2.0]])


def test_adam_step_validates_all_before_updating():
    a, b = Tensor(1, 2), Tensor(2, 2)
    opt = Adam([a, b])
    with pytest.raises(ShapeMismatchError):
        opt.step([Tensor.from_array([[1.0, 1.0]]), Tensor(1, 1)], 0.1)
    assert a.sum() == 0.0
    assert all(s.t == 0 for s in opt.states)

    opt.step([Tensor.from_array([[1.0, 1.0]]), Tensor.from_array(np.ones((2, 2)))], 0.1)
    assert all(s.t == 1 for s in opt.states)
    assert_array_equal(a.data < 0, [[True, True]])


def test_first_step_bias_correction_is_exact(rng):
    g = Tensor.from_array(rng.standard_normal((50, 50)))
    state = AdamState(g.shape)
    m_hat, v_hat = state.update(Tensor(50, 50), g, 0.001)
    assert_array_equal(m_hat.data, g.data)
    assert_array_equal(v_hat.data, g.data * g.data)


def test_bias_corrected_moments_on_later_steps():
    cfg = AdamConfig()
    state = AdamState((1, 1), cfg)
    param = Tensor(1, 1)
    state.update(param, Tensor.from_array([[1.0]]), 0.1)
    m_hat, v_hat = state.update(param, Tensor.from_array([[3.0]]), 0.1)
    m = cfg.beta1 * (1 - cfg.beta1) * 1.0 + (1 - cfg.beta1) * 3.0
    v = cfg.beta2 * (1 - cfg.beta2) * 1.0 + (1 - cfg.beta2) * 9.0
    assert_allclose(state.m.data, [[m]])
    assert_allclose(m_hat.data, [[m / (1 - cfg.beta1 ** 2)]])
    assert_allclose(v_hat.data, [[v / (1 - cfg.beta2 ** 2)]])
