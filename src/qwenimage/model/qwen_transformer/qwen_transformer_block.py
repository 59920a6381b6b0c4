from __future__ import annotations

import mlx.core as mx
from mlx import nn

from qwenimage.model.qwen_transformer.qwen_attention import QwenAttention
from qwenimage.model.qwen_transformer.qwen_feed_forward import QwenFeedForward
from qwenimage.model.qwen_transformer.qwen_layer_norm import QwenLayerNorm
from qwenimage.model.qwen_transformer.qwen_quantization_spec import QwenQuantizationSpec
from qwenimage.model.qwen_transformer.qwen_rope import RotaryPair


class QwenTransformerBlock(nn.Module):
    def __init__(self, dim: int = 3072, num_heads: int = 24, head_dim: int = 128):
        super().__init__()
        self.img_norm1 = QwenLayerNorm(dim=dim)
        self.txt_norm1 = QwenLayerNorm(dim=dim)
        self.attn = QwenAttention(dim=dim, num_heads=num_heads, head_dim=head_dim)
        self.img_norm2 = nn.LayerNorm(dims=dim, eps=1e-6, affine=False)
        self.txt_norm2 = nn.LayerNorm(dims=dim, eps=1e-6, affine=False)
        self.img_ff = QwenFeedForward(dim=dim)
        self.txt_ff = QwenFeedForward(dim=dim)

    def set_attention_quantization(self, spec: QwenQuantizationSpec | None) -> None:
        self.attn.quantization_spec = spec

    def __call__(
        self,
        hidden_states: mx.array,
        encoder_hidden_states: mx.array,
        encoder_hidden_states_mask: mx.array | None,
        text_embeddings: mx.array,
        image_rotary_emb: RotaryPair,
        attention_mask: mx.array | None = None,
    ) -> tuple[mx.array, mx.array]:
        img = self.img_norm1(hidden_states, text_embeddings)
        txt = self.txt_norm1(encoder_hidden_states, text_embeddings)

        img_attn_output, txt_attn_output = self.attn(
            img_modulated=img.modulated,
            txt_modulated=txt.modulated,
            encoder_hidden_states_mask=encoder_hidden_states_mask,
            image_rotary_emb=image_rotary_emb,
            attention_mask=attention_mask,
        )

        hidden_states = QwenTransformerBlock._apply_residual_and_feed_forward(
            hidden_states=hidden_states,
            attn_output=img_attn_output,
            gate1=img.gate,
            mod2=img.mod2,
            norm=self.img_norm2,
            ff=self.img_ff,
        )
        encoder_hidden_states = QwenTransformerBlock._apply_residual_and_feed_forward(
            hidden_states=encoder_hidden_states,
            attn_output=txt_attn_output,
            gate1=txt.gate,
            mod2=txt.mod2,
            norm=self.txt_norm2,
            ff=self.txt_ff,
        )
        return encoder_hidden_states, hidden_states

    @staticmethod
    def _apply_residual_and_feed_forward(
        hidden_states: mx.array,
        attn_output: mx.array,
        gate1: mx.array,
        mod2: mx.array,
        norm: nn.LayerNorm,
        ff: QwenFeedForward,
    ) -> mx.array:
        hidden_states = hidden_states + gate1 * attn_output
        modulated, gate2 = QwenLayerNorm.modulate(norm(hidden_states), mod2)
        return hidden_states + gate2 * ff(modulated)
