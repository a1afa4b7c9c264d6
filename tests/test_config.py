import numpy as np
import pytest
from numpy.testing import assert_allclose

from np_unet import (DEFAULT_CONFIG, InvalidHyperparameterError, UNet, UnsupportedOptionError,
                     create_unet_from_config, load_config, load_yaml_config)


def test_missing_file_yields_empty(tmp_path):
    assert load_yaml_config(str(tmp_path / 'absent.yaml')) == {}


def test_empty_file_yields_empty(tmp_path):
    path = tmp_path / 'empty.yaml'
    path.write_text('')
    assert load_yaml_config(str(path)) == {}


def test_non_mapping_is_rejected(tmp_path):
    path = tmp_path / 'list.yaml'
    path.write_text('- 1\n- 2\n')
    with pytest.raises(InvalidHyperparameterError):
        load_yaml_config(str(path))


def test_merge_order(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('max_filters: 8\nlearning_rate: 0.05\n')
    config = load_config(str(path), learning_rate=0.2)
    assert config['max_filters'] == 8
    assert config['learning_rate'] == 0.2
    assert config['kernel_size'] == DEFAULT_CONFIG['kernel_size']


def test_defaults_are_not_mutated():
    load_config(max_filters=16)
    assert DEFAULT_CONFIG['max_filters'] == 4


def test_unknown_keys_rejected(tmp_path):
    with pytest.raises(UnsupportedOptionError):
        load_config(batch_size=4)
    path = tmp_path / 'config.yaml'
    path.write_text('use_batchnorm: true\n')
    with pytest.raises(UnsupportedOptionError):
        load_config(str(path))


def test_create_unet_from_config():
    config = load_config(input_size=16, max_filters=2, beta1=0.8, seed=1)
    net = create_unet_from_config(config)
    assert isinstance(net, UNet)
    assert net.output_size == (1, 1)
    assert net.adam_config.beta1 == 0.8
    assert next(net.parameters()).state.config.beta1 == 0.8


def test_create_unet_from_config_is_seeded():
    a = create_unet_from_config(load_config(seed=5))
    b = create_unet_from_config(load_config(seed=5))
    for pa, pb in zip(a.parameters(), b.parameters()):
        assert_allclose(pa.data, pb.data)


def test_default_config_builds():
    net = create_unet_from_config(dict(DEFAULT_CONFIG))
    assert net.output_size == (5, 5)
