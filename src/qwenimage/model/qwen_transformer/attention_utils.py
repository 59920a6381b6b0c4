from __future__ import annotations

from typing import NamedTuple

import mlx.core as mx
from mlx import nn

from qwenimage.utils.exceptions import ShapeMismatchError


class QKV(NamedTuple):
    query: mx.array
    key: mx.array
    value: mx.array


class JointStreams(NamedTuple):
    text: mx.array
    image: mx.array


class QuantizedTensor(NamedTuple):
    weights: mx.array
    scales: mx.array
    biases: mx.array | None = None


class AttentionUtils:
    @staticmethod
    def process_qkv(
        hidden_states: mx.array,
        to_q: nn.Module,
        to_k: nn.Module,
        to_v: nn.Module,
        norm_q: nn.Module,
        norm_k: nn.Module,
        num_heads: int,
        head_dim: int,
    ) -> QKV:
        batch_size, seq_len, _ = hidden_states.shape

        query = to_q(hidden_states)
        key = to_k(hidden_states)
        value = to_v(hidden_states)
        if query.shape[-1] != num_heads * head_dim:
            raise ShapeMismatchError(
                f"Projected width {query.shape[-1]} does not match {num_heads} heads of size {head_dim}"
            )

        # [B, S, H*D] -> [B, S, H, D] -> [B, H, S, D]
        query = mx.transpose(mx.reshape(query, (batch_size, seq_len, num_heads, head_dim)), (0, 2, 1, 3))
        key = mx.transpose(mx.reshape(key, (batch_size, seq_len, num_heads, head_dim)), (0, 2, 1, 3))
        value = mx.transpose(mx.reshape(value, (batch_size, seq_len, num_heads, head_dim)), (0, 2, 1, 3))

        query = norm_q(query).astype(query.dtype)
        key = norm_k(key).astype(key.dtype)
        return QKV(query=query, key=key, value=value)

    @staticmethod
    def compute_attention(
        query: mx.array,
        key: mx.array,
        value: mx.array,
        mask: mx.array | None = None,
    ) -> mx.array:
        scale = 1.0 / (query.shape[-1] ** 0.5)
        hidden_states = mx.fast.scaled_dot_product_attention(query, key, value, scale=scale, mask=mask)
        return AttentionUtils.merge_heads(hidden_states)

    @staticmethod
    def merge_heads(hidden_states: mx.array) -> mx.array:
        # [B, H, S, D] -> [B, S, H, D] -> [B, S, H*D]
        hidden_states = mx.transpose(hidden_states, (0, 2, 1, 3))
        batch_size, seq_len, num_heads, head_dim = hidden_states.shape
        return mx.reshape(hidden_states, (batch_size, seq_len, num_heads * head_dim))

    @staticmethod
    def quantize(tensor: mx.array, group_size: int = 64, bits: int = 8, mode: str = "affine") -> QuantizedTensor:
        if tensor.shape[-1] % group_size != 0:
            raise ShapeMismatchError(
                f"Last dimension {tensor.shape[-1]} is not divisible by quantization group size {group_size}"
            )
        return QuantizedTensor(*mx.quantize(tensor, group_size=group_size, bits=bits, mode=mode))

    @staticmethod
    def quantized_scaled_dot_product_attention(
        queries: mx.array,
        quantized_keys: QuantizedTensor,
        quantized_values: QuantizedTensor,
        scale: float,
        mask: mx.array | str | None = None,
        group_size: int = 64,
        bits: int = 8,
        mode: str = "affine",
    ) -> mx.array:
        """Scaled dot-product attention over pre-quantized keys and values.

        Shapes:
            queries: [B, Nq, L, D]
            quantized_keys / quantized_values: packed tensors from ``mx.quantize`` over
            [B, Nkv, S, D] inputs, quantized along D.

        The keys and values are never quantized here. When ``Nq > Nkv`` the query heads are
        grouped and the keys/values are broadcast across the group axis. ``mask`` may be
        ``"causal"``, a boolean array (``False`` marks excluded positions) or an additive array.
        Returns [B, Nq, L, D].
        """
        batch_size, n_q_heads, seq_len, head_dim = queries.shape
        n_kv_heads = quantized_keys.weights.shape[-3]
        if n_q_heads % n_kv_heads != 0:
            raise ShapeMismatchError(
                f"Query heads ({n_q_heads}) must be a multiple of key/value heads ({n_kv_heads})"
            )
        n_repeats = n_q_heads // n_kv_heads

        queries = queries * scale

        if n_repeats > 1:
            queries = mx.reshape(queries, (batch_size, n_kv_heads, n_repeats, seq_len, head_dim))
            quantized_keys = AttentionUtils._expand_group_axis(quantized_keys)
            quantized_values = AttentionUtils._expand_group_axis(quantized_values)

        scores = mx.quantized_matmul(
            queries,
            quantized_keys.weights,
            scales=quantized_keys.scales,
            biases=quantized_keys.biases,
            transpose=True,
            group_size=group_size,
            bits=bits,
            mode=mode,
        )

        scores = AttentionUtils._apply_score_mask(scores, mask, n_kv_heads, n_repeats)
        attention_weights = mx.softmax(scores, axis=-1)

        output = mx.quantized_matmul(
            attention_weights,
            quantized_values.weights,
            scales=quantized_values.scales,
            biases=quantized_values.biases,
            transpose=False,
            group_size=group_size,
            bits=bits,
            mode=mode,
        )

        if n_repeats > 1:
            output = mx.reshape(output, (batch_size, n_q_heads, seq_len, head_dim))
        return output

    @staticmethod
    def create_causal_mask(q_len: int, k_len: int) -> mx.array:
        # Queries are aligned to the end of the keys
        q_indices = mx.arange(q_len) + (k_len - q_len)
        k_indices = mx.arange(k_len)
        return q_indices[:, None] >= k_indices[None, :]

    @staticmethod
    def convert_key_padding_mask_to_additive_mask(
        mask: mx.array | None,
        joint_seq_len: int,
        txt_seq_len: int,
        dtype: mx.Dtype = mx.float32,
    ) -> mx.array | None:
        if mask is None:
            return None

        batch_size = mask.shape[0]
        img_seq_len = joint_seq_len - txt_seq_len
        if img_seq_len < 0:
            raise ShapeMismatchError(
                f"Joint sequence length ({joint_seq_len}) must be >= text sequence length ({txt_seq_len})"
            )

        # Image tokens are always attended to, only text tokens can be padding
        ones_img = mx.ones((batch_size, img_seq_len), dtype=mx.float32)
        joint_mask = mx.concatenate([mask.astype(mx.float32), ones_img], axis=1)
        additive = (1.0 - joint_mask) * (-1e9)
        return mx.reshape(additive, (batch_size, 1, 1, additive.shape[1])).astype(dtype)

    @staticmethod
    def apply_rope(query: mx.array, key: mx.array, freqs: mx.array) -> tuple[mx.array, mx.array]:
        """Rotate [B, H, S, D] query/key with rotation matrices shaped [1, 1, S, D/2, 2, 2]."""
        AttentionUtils._check_even_features(query)
        AttentionUtils._check_even_features(key)
        rope_shape = (*query.shape[:-1], query.shape[-1] // 2, 1, 2)
        compute_dtype = freqs.dtype

        def rotate(x: mx.array) -> mx.array:
            pairs = mx.reshape(x.astype(compute_dtype), rope_shape)
            out = freqs[..., 0] * pairs[..., 0] + freqs[..., 1] * pairs[..., 1]
            return mx.reshape(out, x.shape).astype(x.dtype)

        return rotate(query), rotate(key)

    @staticmethod
    def apply_rope_bshd(
        query: mx.array,
        key: mx.array,
        cos: mx.array,
        sin: mx.array,
    ) -> tuple[mx.array, mx.array]:
        """Rotate [B, S, H, D] query/key with per-position cos/sin tables shaped [S, D/2]."""
        AttentionUtils._check_even_features(query)
        AttentionUtils._check_even_features(key)
        compute_dtype = cos.dtype
        cos = cos.astype(compute_dtype)[None, :, None, :]
        sin = sin.astype(compute_dtype)[None, :, None, :]

        def rotate(x: mx.array) -> mx.array:
            pairs = mx.reshape(x.astype(compute_dtype), (*x.shape[:-1], -1, 2))
            x_real = pairs[..., 0]
            x_imag = pairs[..., 1]
            out_real = x_real * cos - x_imag * sin
            out_imag = x_imag * cos + x_real * sin
            return mx.reshape(mx.stack([out_real, out_imag], axis=-1), x.shape).astype(x.dtype)

        return rotate(query), rotate(key)

    @staticmethod
    def join_text_image(text: mx.array, image: mx.array, axis: int) -> mx.array:
        return mx.concatenate([text, image], axis=axis)

    @staticmethod
    def split_text_image(joint: mx.array, txt_seq_len: int, axis: int) -> JointStreams:
        text, image = mx.split(joint, [txt_seq_len], axis=axis)
        return JointStreams(text=text, image=image)

    @staticmethod
    def _expand_group_axis(tensor: QuantizedTensor) -> QuantizedTensor:
        return QuantizedTensor(
            weights=mx.expand_dims(tensor.weights, -3),
            scales=mx.expand_dims(tensor.scales, -3),
            biases=None if tensor.biases is None else mx.expand_dims(tensor.biases, -3),
        )

    @staticmethod
    def _apply_score_mask(
        scores: mx.array,
        mask: mx.array | str | None,
        n_kv_heads: int,
        n_repeats: int,
    ) -> mx.array:
        if mask is None:
            return scores

        # Lowest finite value instead of -inf keeps the softmax stable for quantized scores
        sentinel = mx.array(mx.finfo(scores.dtype).min, dtype=scores.dtype)
        if isinstance(mask, str):
            if mask != "causal":
                raise ValueError(f"Unsupported attention mask mode {mask!r}")
            causal = AttentionUtils.create_causal_mask(scores.shape[-2], scores.shape[-1])
            return mx.where(causal, scores, sentinel)

        if n_repeats > 1 and mask.ndim == 4:
            if mask.shape[1] == 1:
                mask = mx.expand_dims(mask, -3)
            else:
                mask = mx.reshape(mask, (mask.shape[0], n_kv_heads, n_repeats, *mask.shape[2:]))

        if mask.dtype == mx.bool_:
            return mx.where(mask, scores, sentinel)
        return scores + mask.astype(scores.dtype)

    @staticmethod
    def _check_even_features(x: mx.array) -> None:
        if x.shape[-1] % 2 != 0:
            raise ShapeMismatchError(f"RoPE requires an even feature dimension, got {x.shape[-1]}")
