from __future__ import annotations

import mlx.core as mx
from mlx import nn

from qwenimage.model.qwen_transformer.attention_utils import AttentionUtils
from qwenimage.model.qwen_transformer.qwen_quantization_spec import QwenQuantizationSpec
from qwenimage.model.qwen_transformer.qwen_rope import RotaryPair
from qwenimage.utils.exceptions import ShapeMismatchError


class QwenAttention(nn.Module):
    def __init__(self, dim: int = 3072, num_heads: int = 24, head_dim: int = 128):
        super().__init__()
        if num_heads * head_dim != dim:
            raise ShapeMismatchError(f"{num_heads} heads of size {head_dim} do not cover model width {dim}")
        self.dim = dim
        self.num_heads = num_heads
        self.head_dim = head_dim
        self.quantization_spec: QwenQuantizationSpec | None = None

        # Attention projections for image stream
        self.to_q = nn.Linear(dim, dim)
        self.to_k = nn.Linear(dim, dim)
        self.to_v = nn.Linear(dim, dim)

        # Attention projections for text stream
        self.add_q_proj = nn.Linear(dim, dim)
        self.add_k_proj = nn.Linear(dim, dim)
        self.add_v_proj = nn.Linear(dim, dim)

        # Query/Key normalization
        self.norm_q = nn.RMSNorm(head_dim, eps=1e-6)
        self.norm_k = nn.RMSNorm(head_dim, eps=1e-6)
        self.norm_added_q = nn.RMSNorm(head_dim, eps=1e-6)
        self.norm_added_k = nn.RMSNorm(head_dim, eps=1e-6)

        # Output projections
        self.attn_to_out = [nn.Linear(dim, dim)]
        self.to_add_out = nn.Linear(dim, dim)

    def __call__(
        self,
        img_modulated: mx.array,
        txt_modulated: mx.array,
        encoder_hidden_states_mask: mx.array | None,
        image_rotary_emb: RotaryPair,
        attention_mask: mx.array | None = None,
    ) -> tuple[mx.array, mx.array]:
        # 1. QKV per stream, [B, H, S, D]
        img_qkv = AttentionUtils.process_qkv(
            hidden_states=img_modulated,
            to_q=self.to_q,
            to_k=self.to_k,
            to_v=self.to_v,
            norm_q=self.norm_q,
            norm_k=self.norm_k,
            num_heads=self.num_heads,
            head_dim=self.head_dim,
        )
        txt_qkv = AttentionUtils.process_qkv(
            hidden_states=txt_modulated,
            to_q=self.add_q_proj,
            to_k=self.add_k_proj,
            to_v=self.add_v_proj,
            norm_q=self.norm_added_q,
            norm_k=self.norm_added_k,
            num_heads=self.num_heads,
            head_dim=self.head_dim,
        )

        # 2. Joint sequence is always [text, image]
        seq_txt = txt_modulated.shape[1]
        joint_query = AttentionUtils.join_text_image(txt_qkv.query, img_qkv.query, axis=2)
        joint_key = AttentionUtils.join_text_image(txt_qkv.key, img_qkv.key, axis=2)
        joint_value = AttentionUtils.join_text_image(txt_qkv.value, img_qkv.value, axis=2)

        # 3. RoPE per segment of the joint sequence
        joint_query, joint_key = QwenAttention._apply_rotary_embeddings_joint(
            joint_query=joint_query,
            joint_key=joint_key,
            txt_seq_len=seq_txt,
            image_rotary_emb=image_rotary_emb,
        )

        # 4. Attention
        if attention_mask is None:
            attention_mask = AttentionUtils.convert_key_padding_mask_to_additive_mask(
                mask=encoder_hidden_states_mask,
                joint_seq_len=joint_query.shape[2],
                txt_seq_len=seq_txt,
                dtype=joint_query.dtype,
            )

        if self.quantization_spec is None:
            hidden_states = AttentionUtils.compute_attention(joint_query, joint_key, joint_value, mask=attention_mask)
        else:
            hidden_states = self._compute_quantized_attention(
                joint_query=joint_query,
                joint_key=joint_key,
                joint_value=joint_value,
                mask=attention_mask,
                spec=self.quantization_spec,
            )

        # 5. Split at the same boundary used for the concatenation
        txt_attn_output, img_attn_output = AttentionUtils.split_text_image(hidden_states, seq_txt, axis=1)

        # 6. Output projections
        img_attn_output = self.attn_to_out[0](img_attn_output)
        txt_attn_output = self.to_add_out(txt_attn_output)
        return img_attn_output, txt_attn_output

    def _compute_quantized_attention(
        self,
        joint_query: mx.array,
        joint_key: mx.array,
        joint_value: mx.array,
        mask: mx.array | None,
        spec: QwenQuantizationSpec,
    ) -> mx.array:
        quantized_keys = AttentionUtils.quantize(
            joint_key.astype(mx.float32),
            group_size=spec.group_size,
            bits=spec.bits,
            mode=spec.mode,
        )
        quantized_values = AttentionUtils.quantize(
            joint_value.astype(mx.float32),
            group_size=spec.group_size,
            bits=spec.bits,
            mode=spec.mode,
        )
        context = AttentionUtils.quantized_scaled_dot_product_attention(
            queries=joint_query.astype(mx.float32),
            quantized_keys=quantized_keys,
            quantized_values=quantized_values,
            scale=1.0 / (self.head_dim**0.5),
            mask=mask,
            group_size=spec.group_size,
            bits=spec.bits,
            mode=spec.mode,
        )
        return AttentionUtils.merge_heads(context).astype(joint_query.dtype)

    @staticmethod
    def _apply_rotary_embeddings_joint(
        joint_query: mx.array,
        joint_key: mx.array,
        txt_seq_len: int,
        image_rotary_emb: RotaryPair,
    ) -> tuple[mx.array, mx.array]:
        txt_query, img_query = AttentionUtils.split_text_image(joint_query, txt_seq_len, axis=2)
        txt_key, img_key = AttentionUtils.split_text_image(joint_key, txt_seq_len, axis=2)

        img_cos, img_sin = QwenAttention._cos_sin(image_rotary_emb.image)
        txt_cos, txt_sin = QwenAttention._cos_sin(image_rotary_emb.text)
        if img_cos.shape[0] != img_query.shape[2] or txt_cos.shape[0] != txt_query.shape[2]:
            raise ShapeMismatchError(
                f"Rotary tables cover {txt_cos.shape[0]} text / {img_cos.shape[0]} image tokens, "
                f"got {txt_query.shape[2]} text / {img_query.shape[2]} image tokens"
            )

        # [B, H, S, D] -> [B, S, H, D]
        img_query, img_key = AttentionUtils.apply_rope_bshd(
            query=mx.transpose(img_query, (0, 2, 1, 3)),
            key=mx.transpose(img_key, (0, 2, 1, 3)),
            cos=img_cos,
            sin=img_sin,
        )
        txt_query, txt_key = AttentionUtils.apply_rope_bshd(
            query=mx.transpose(txt_query, (0, 2, 1, 3)),
            key=mx.transpose(txt_key, (0, 2, 1, 3)),
            cos=txt_cos,
            sin=txt_sin,
        )

        joint_query = AttentionUtils.join_text_image(
            mx.transpose(txt_query, (0, 2, 1, 3)),
            mx.transpose(img_query, (0, 2, 1, 3)),
            axis=2,
        )
        joint_key = AttentionUtils.join_text_image(
            mx.transpose(txt_key, (0, 2, 1, 3)),
            mx.transpose(img_key, (0, 2, 1, 3)),
            axis=2,
        )
        return joint_query, joint_key

    @staticmethod
    def _cos_sin(rotation: mx.array) -> tuple[mx.array, mx.array]:
        # [1, 1, S, D/2, 2, 2] rotation matrices -> [S, D/2] cos and sin
        cos = rotation[..., 0, 0]
        sin = rotation[..., 1, 0]
        return (
            mx.reshape(cos, (rotation.shape[2], rotation.shape[3])),
            mx.reshape(sin, (rotation.shape[2], rotation.shape[3])),
        )
