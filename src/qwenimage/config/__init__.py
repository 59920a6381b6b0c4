from qwenimage.config.config import Config
from qwenimage.config.transformer_config import TransformerConfig

__all__ = ["Config", "TransformerConfig"]
