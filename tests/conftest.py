import numpy as np
import pytest

from np_unet import Tensor


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def disc():
    """20x20 image of a bright disc and its binary mask"""
    yy, xx = np.mgrid[0:20, 0:20]
    mask = ((yy - 9.5) ** 2 + (xx - 9.5) ** 2 <= 36).astype(np.float64)
    image = mask * 0.8 + np.random.default_rng(0).standard_normal((20, 20)) * 0.1
    return Tensor.from_array(image), Tensor.from_array(mask)
