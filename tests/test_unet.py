import math

import numpy as np
import pytest
from numpy.testing import assert_allclose

from np_unet import (Decoder, Encoder, InvalidHyperparameterError, PassOrderError, ShapeMismatchError,
                     Tensor, UNet, UNetState, UnsupportedOptionError, create_unet, new_unet)
from np_unet.nn import stack, unstack


def _small_unet(**kwargs):
    params = dict(input_size=20, input_channels=1, num_en_decoders=1, max_filters=2,
                  learning_rate=0.01, rng=np.random.default_rng(7))
    params.update(kwargs)
    return create_unet(**params)


def test_encoder_forward_backward_shapes(rng):
    enc = Encoder(1, 2, 3, 'relu', 2, 2, rng=rng)
    out = enc(Tensor.from_array(rng.standard_normal((10, 10))))
    assert len(out) == 2
    assert out[0].shape == (3, 3) == enc.output_shape(10, 10)
    grad = enc.backward(unstack(np.ones((2, 3, 3))))
    assert len(grad) == 1
    assert grad[0].shape == (10, 10)
    assert all(p.grad is not None for p in enc.parameters())


def test_decoder_returns_skip_gradient_at_source_shape(rng):
    dec = Decoder(4, 2, 3, 'relu', up_stride=2, skip_channels=2, rng=rng)
    x = unstack(rng.standard_normal((4, 2, 2)))
    skip = unstack(rng.standard_normal((2, 8, 8)))
    out = dec(x, skip)
    assert len(out) == 2
    assert out[0].shape == (1, 1) == dec.output_shape(2, 2)

    input_grad, skip_grad = dec.backward(unstack(np.ones((2, 1, 1))))
    assert len(input_grad) == 4
    assert input_grad[0].shape == (2, 2)
    assert len(skip_grad) == 2
    assert skip_grad[0].shape == (8, 8)


def test_bottleneck_has_no_skip(rng):
    dec = Decoder(2, 4, 3, 'relu', rng=rng)
    assert dec.upsample_layers == []
    dec(unstack(rng.standard_normal((2, 6, 6))))
    grad, skip_grad = dec.backward(unstack(np.ones((4, 2, 2))))
    assert skip_grad is None
    assert stack(grad).shape == (2, 6, 6)


def test_decoder_rejects_missing_skip(rng):
    dec = Decoder(4, 2, 3, 'relu', up_stride=2, skip_channels=2, rng=rng)
    with pytest.raises(ShapeMismatchError):
        dec(unstack(rng.standard_normal((4, 2, 2))))


def test_output_shapes():
    assert _small_unet().output_size == (5, 5)
    assert _small_unet(input_size=16).output_size == (1, 1)
    assert _small_unet(input_size=40, num_en_decoders=2).output_size == (3, 3)


def test_filter_counts():
    net = _small_unet(input_size=40, num_en_decoders=2, max_filters=3)
    assert [e.num_filters for e in net.encoders] == [3, 6]
    assert net.bottleneck.num_filters == 12
    assert [d.num_filters for d in net.decoders] == [3, 6]
    assert net.final_conv.num_filters == 1


def test_count_parameters():
    # enc 20 + 38, bottleneck 76 + 148, decoder 74 + 74 + 38, final 3
    assert _small_unet().count_parameters() == 471


def test_collapsing_input_is_rejected():
    with pytest.raises(InvalidHyperparameterError):
        _small_unet(input_size=8)


@pytest.mark.parametrize('kwargs', [
    {'num_en_decoders': 0},
    {'max_filters': 0},
    {'kernel_size': 1.5},
    {'pool_stride': -1},
    {'learning_rate': 0.0},
    {'max_iterations': -1},
])
def test_invalid_hyperparameters(kwargs):
    with pytest.raises(InvalidHyperparameterError):
        _small_unet(**kwargs)


@pytest.mark.parametrize('kwargs', [
    {'activation': 'tanh'},
    {'loss_function': 'focal'},
    {'gradient_seed': 'random'},
])
def test_unsupported_options(kwargs):
    with pytest.raises(UnsupportedOptionError):
        _small_unet(**kwargs)


def test_step_end_to_end(disc):
    image, mask = disc
    net = _small_unet()
    assert net.state is UNetState.CONSTRUCTED
    assert net.get_loss() == math.inf

    loss = net.step(image, mask)
    assert math.isfinite(loss)
    assert net.get_loss() == loss
    assert net.steps == 1
    assert net.state is UNetState.STEPPING


def test_step_updates_parameters(disc):
    image, mask = disc
    net = _small_unet()
    before = [p.to_numpy() for p in net.parameters()]
    net.step(image, mask)
    changed = [not np.allclose(b, p.data) for b, p in zip(before, net.parameters())]
    assert any(changed)
    assert not np.allclose(before[-1], net.final_conv.bias.data)


def test_step_with_loss_gradient_seed(disc):
    image, mask = disc
    net = _small_unet(loss_function='dice', gradient_seed='loss_gradient')
    loss = net.step(image, mask)
    assert 0.0 <= loss <= 1.0


def test_stops_after_max_iterations(disc):
    image, mask = disc
    net = _small_unet(max_iterations=2)
    for _ in range(3):
        net.step(image, mask)
    assert net.stopped
    assert net.state is UNetState.STOPPED
    with pytest.raises(PassOrderError):
        net.step(image, mask)
    assert net.steps == 3


def test_stops_below_loss_tolerance(disc):
    image, mask = disc
    net = _small_unet(loss_tolerance=10.0)
    net.step(image, mask)
    assert net.stopped


def test_invalid_learning_rate_rejected_before_forward(disc):
    image, mask = disc
    net = _small_unet()
    before = [p.to_numpy() for p in net.parameters()]
    with pytest.raises(InvalidHyperparameterError):
        net.step(image, mask, learning_rate=-1.0)
    assert net.steps == 0
    assert all(np.array_equal(b, p.data) for b, p in zip(before, net.parameters()))
    net.step(image, mask)


def test_forward_twice_without_backward(disc):
    image, mask = disc
    net = _small_unet()
    out = net.forward(image)
    with pytest.raises(PassOrderError):
        net.forward(image)
    net.backward(out, mask, 0.5)
    net.forward(image)


def test_backward_without_forward(disc):
    image, mask = disc
    net = _small_unet()
    with pytest.raises(PassOrderError):
        net.backward([Tensor(5, 5)], mask, 0.5)


def test_wrong_input_shape_then_recover(disc):
    image, mask = disc
    net = _small_unet()
    with pytest.raises(ShapeMismatchError):
        net.step(Tensor(16, 16), mask)
    with pytest.raises(ShapeMismatchError):
        net.step([image, image], mask)
    assert math.isfinite(net.step(image, mask))


def test_predict_keeps_no_pending_state(disc):
    image, mask = disc
    net = _small_unet()
    p1 = net.predict(image)
    p2 = net.predict(image)
    assert p1.shape == (5, 5)
    assert p1.equals(p2)
    assert 0.0 <= p1.min() and p1.max() <= 1.0
    net.step(image, mask)


def test_multichannel_input(rng):
    net = _small_unet(input_channels=2)
    image = [Tensor.from_array(rng.random((20, 20))) for _ in range(2)]
    loss = net.step(image, Tensor.from_array(np.ones((20, 20))))
    assert math.isfinite(loss)


def test_without_final_conv(disc):
    image, mask = disc
    net = _small_unet(use_final_conv=False, activation='sigmoid')
    out = net.forward(image)
    assert len(out) == 2
    net.backward(out, mask, 0.1)
    assert math.isfinite(net.step(image, mask))


def test_new_unet_positional():
    net = new_unet(16, 1, 1, 2, 'relu', 3, 2, 2, 0.001, 'mse')
    assert isinstance(net, UNet)
    assert net.get_config()['loss_function'] == 'mse'


def test_get_config_and_summary():
    net = _small_unet()
    cfg = net.get_config()
    assert cfg['input_size'] == 20
    assert cfg['max_filters'] == 2
    text = net.summary()
    assert text.startswith('UNet: input 20x20x1, output 5x5')
    assert 'Encoder:' in text and 'Decoder:' in text and 'Final ConvLayer' in text


def test_seeded_construction_is_deterministic():
    a = _small_unet(rng=None, seed=3)
    b = _small_unet(rng=None, seed=3)
    for pa, pb in zip(a.parameters(), b.parameters()):
        assert_allclose(pa.data, pb.data)


def test_failed_backward_does_not_block_training(disc):
    image, mask = disc
    net = _small_unet()
    net.forward(image)
    with pytest.raises(ShapeMismatchError):
        net.backward([Tensor(3, 3)], mask, 0.5)
    assert all(p.grad is None for p in net.parameters())
    with pytest.raises(PassOrderError):
        net.backward([Tensor(5, 5)], mask, 0.5)
    assert math.isfinite(net.step(image, mask))
    assert net.steps == 1


def test_update_clears_gradients(disc):
    image, mask = disc
    net = _small_unet()
    net.step(image, mask)
    assert all(p.grad is None for p in net.parameters())
    before = [p.to_numpy() for p in net.parameters()]
    net.update(0.01)
    assert all(np.array_equal(b, p.data) for b, p in zip(before, net.parameters()))
