class QwenImageException(Exception):
    """base class for all custom exceptions in qwenimage package."""


class ModelConfigError(QwenImageException, ValueError):
    """invalid model hyper-parameters or quantization settings."""


class ShapeMismatchError(QwenImageException, ValueError):
    """tensor shapes handed to the transformer do not fit its configuration."""
