from qwenimage.model.qwen_transformer.qwen_quantization_spec import QwenQuantizationSpec
from qwenimage.model.qwen_transformer.qwen_rope import QwenEmbedRope, RotaryPair
from qwenimage.model.qwen_transformer.qwen_transformer import QwenTransformer

__all__ = ["QwenEmbedRope", "QwenQuantizationSpec", "QwenTransformer", "RotaryPair"]
