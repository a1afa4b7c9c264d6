"""
Exception types raised by the U-Net engine
"""


class UNetError(Exception):
    """Base class for every error raised by np_unet"""


class ShapeMismatchError(UNetError, ValueError):
    """Elementwise, matmul or concatenation on tensors of incompatible shape"""


class IndexOutOfRangeError(UNetError, IndexError):
    """Direct element access outside of a tensor's bounds"""


class InvalidHyperparameterError(UNetError, ValueError):
    """Learning rate, kernel size, filter count etc. outside the valid range"""


class UnsupportedOptionError(UNetError, ValueError):
    """Unknown activation, loss or configuration identifier"""


class PassOrderError(UNetError, RuntimeError):
    """Forward/backward calls issued out of order (single outstanding pass)"""
