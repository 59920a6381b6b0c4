"""Tests for the joint text/image attention module."""

import mlx.core as mx
import pytest

from qwenimage.model.qwen_transformer.qwen_attention import QwenAttention
from qwenimage.model.qwen_transformer.qwen_quantization_spec import QwenQuantizationSpec
from qwenimage.model.qwen_transformer.qwen_rope import QwenEmbedRope
from qwenimage.utils.exceptions import ShapeMismatchError

DIM = 64
NUM_HEADS = 2
HEAD_DIM = 32


@pytest.fixture
def attention() -> QwenAttention:
    attn = QwenAttention(dim=DIM, num_heads=NUM_HEADS, head_dim=HEAD_DIM)
    mx.eval(attn.parameters())
    return attn


@pytest.fixture(scope="module")
def rope() -> QwenEmbedRope:
    return QwenEmbedRope(theta=10000, axes_dim=[8, 12, 12], scale_rope=True)


class TestQwenAttention:
    @pytest.mark.fast
    def test_output_shapes(self, attention, rope):
        img = mx.random.normal((2, 12, DIM))
        txt = mx.random.normal((2, 5, DIM))
        pair = rope(video_fhw=(1, 3, 4), txt_seq_lens=[5, 3])

        img_out, txt_out = attention(img, txt, encoder_hidden_states_mask=None, image_rotary_emb=pair)

        assert img_out.shape == (2, 12, DIM)
        assert txt_out.shape == (2, 5, DIM)

    @pytest.mark.fast
    def test_full_padding_mask_equals_no_mask(self, attention, rope):
        img = mx.random.normal((1, 4, DIM))
        txt = mx.random.normal((1, 3, DIM))
        pair = rope(video_fhw=(1, 2, 2), txt_seq_lens=[3])

        unmasked = attention(img, txt, encoder_hidden_states_mask=None, image_rotary_emb=pair)
        masked = attention(img, txt, encoder_hidden_states_mask=mx.ones((1, 3)), image_rotary_emb=pair)

        assert mx.allclose(unmasked[0], masked[0], atol=1e-5)
        assert mx.allclose(unmasked[1], masked[1], atol=1e-5)

    @pytest.mark.fast
    def test_padded_text_does_not_affect_image(self, attention, rope):
        img = mx.random.normal((1, 4, DIM))
        txt = mx.random.normal((1, 3, DIM))
        other_txt = mx.concatenate([txt[:, :2], mx.random.normal((1, 1, DIM))], axis=1)
        pair = rope(video_fhw=(1, 2, 2), txt_seq_lens=[3])
        padding = mx.array([[1, 1, 0]])

        img_a, _ = attention(img, txt, encoder_hidden_states_mask=padding, image_rotary_emb=pair)
        img_b, _ = attention(img, other_txt, encoder_hidden_states_mask=padding, image_rotary_emb=pair)

        assert mx.allclose(img_a, img_b, atol=1e-5)

    @pytest.mark.fast
    def test_explicit_mask_takes_precedence(self, attention, rope):
        img = mx.random.normal((1, 4, DIM))
        txt = mx.random.normal((1, 3, DIM))
        pair = rope(video_fhw=(1, 2, 2), txt_seq_lens=[3])

        baseline = attention(img, txt, encoder_hidden_states_mask=None, image_rotary_emb=pair)
        overridden = attention(
            img,
            txt,
            encoder_hidden_states_mask=mx.array([[1, 0, 0]]),
            image_rotary_emb=pair,
            attention_mask=mx.zeros((1, 1, 1, 7)),
        )

        assert mx.allclose(baseline[0], overridden[0], atol=1e-5)

    @pytest.mark.fast
    def test_quantized_attention_close_to_full_precision(self, attention, rope):
        img = mx.random.normal((1, 12, DIM))
        txt = mx.random.normal((1, 4, DIM))
        pair = rope(video_fhw=(1, 3, 4), txt_seq_lens=[4])

        full_img, full_txt = attention(img, txt, encoder_hidden_states_mask=None, image_rotary_emb=pair)
        attention.quantization_spec = QwenQuantizationSpec(group_size=32, bits=8)
        quant_img, quant_txt = attention(img, txt, encoder_hidden_states_mask=None, image_rotary_emb=pair)

        assert quant_img.dtype == full_img.dtype
        assert mx.allclose(quant_img, full_img, atol=5e-2)
        assert mx.allclose(quant_txt, full_txt, atol=5e-2)

    @pytest.mark.fast
    def test_quantization_detached(self, attention, rope):
        img = mx.random.normal((1, 4, DIM))
        txt = mx.random.normal((1, 2, DIM))
        pair = rope(video_fhw=(1, 2, 2), txt_seq_lens=[2])

        before = attention(img, txt, encoder_hidden_states_mask=None, image_rotary_emb=pair)
        attention.quantization_spec = QwenQuantizationSpec(group_size=32, bits=4)
        attention.quantization_spec = None
        after = attention(img, txt, encoder_hidden_states_mask=None, image_rotary_emb=pair)

        assert mx.array_equal(before[0], after[0])

    @pytest.mark.fast
    def test_rotary_length_mismatch_rejected(self, attention, rope):
        img = mx.random.normal((1, 4, DIM))
        txt = mx.random.normal((1, 3, DIM))
        pair = rope(video_fhw=(1, 2, 2), txt_seq_lens=[2])

        with pytest.raises(ShapeMismatchError):
            attention(img, txt, encoder_hidden_states_mask=None, image_rotary_emb=pair)

    @pytest.mark.fast
    def test_heads_must_cover_width(self):
        with pytest.raises(ShapeMismatchError):
            QwenAttention(dim=64, num_heads=3, head_dim=16)
