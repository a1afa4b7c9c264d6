"""
Configuration for U-Net construction and training
Defaults, YAML loading and the config -> model factory
"""
from __future__ import annotations

import logging
from typing import Dict, Optional

import numpy as np
import yaml

from .errors import InvalidHyperparameterError, UnsupportedOptionError
from .optim import AdamConfig
from .unet import UNet

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    # Model parameters
    'input_size': 20,
    'input_channels': 1,
    'num_en_decoders': 1,
    'max_filters': 4,
    'activation': 'relu',
    'kernel_size': 3,
    'pool_size': 2,
    'pool_stride': 2,
    'relu_threshold': 0.0,
    'use_final_conv': True,

    # Training parameters
    'learning_rate': 0.001,
    'loss_function': 'mse',  # 'dice', 'mse'
    'loss_tolerance': 0.0,
    'max_iterations': 100,
    'gradient_seed': 'scaled_error',  # 'scaled_error', 'loss_gradient'

    # Adam
    'beta1': 0.9,
    'beta2': 0.999,
    'epsilon': 1e-8,

    # Reproducibility
    'seed': None,
}

_ADAM_KEYS = ('beta1', 'beta2', 'epsilon')


def load_yaml_config(path: str) -> Dict:
    """Read a YAML mapping; a missing file yields an empty dict"""
    try:
        with open(path, 'r') as f:
            cfg = yaml.safe_load(f)
    except FileNotFoundError:
        logger.debug("No config file at %s, using defaults", path)
        return {}
    if cfg is None:
        return {}
    if not isinstance(cfg, dict):
        raise InvalidHyperparameterError(
            f"Config file {path} must contain a mapping, got {type(cfg).__name__}")
    return cfg


def load_config(path: Optional[str] = None, **overrides) -> Dict:
    """
    Merge defaults <- YAML file <- keyword overrides

    Raises:
        UnsupportedOptionError: for keys that are not configuration options
    """
    yaml_cfg = load_yaml_config(path) if path is not None else {}
    config = {**DEFAULT_CONFIG, **yaml_cfg, **overrides}
    unknown = sorted(set(config) - set(DEFAULT_CONFIG))
    if unknown:
        raise UnsupportedOptionError(f"Unknown configuration keys: {', '.join(unknown)}")
    return config


def create_unet_from_config(config: Dict) -> UNet:
    """Build a UNet from a (merged) configuration dict"""
    config = load_config(**config)
    adam_config = AdamConfig(**{k: config[k] for k in _ADAM_KEYS})
    model = UNet(
        config['input_size'],
        config['input_channels'],
        config['num_en_decoders'],
        config['max_filters'],
        config['activation'],
        config['kernel_size'],
        config['pool_size'],
        config['pool_stride'],
        config['learning_rate'],
        config['loss_function'],
        loss_tolerance=config['loss_tolerance'],
        max_iterations=config['max_iterations'],
        relu_threshold=config['relu_threshold'],
        use_final_conv=config['use_final_conv'],
        gradient_seed=config['gradient_seed'],
        adam_config=adam_config,
        rng=np.random.default_rng(config['seed']),
    )
    logger.info("Created UNet with %d parameters", model.count_parameters())
    return model
