from qwenimage.config import Config, TransformerConfig
from qwenimage.model.qwen_transformer import QwenEmbedRope, QwenQuantizationSpec, QwenTransformer, RotaryPair

__all__ = [
    "Config",
    "QwenEmbedRope",
    "QwenQuantizationSpec",
    "QwenTransformer",
    "RotaryPair",
    "TransformerConfig",
]
