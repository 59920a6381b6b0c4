import mlx.core as mx
import pytest

from qwenimage.config.config import Config
from qwenimage.model.qwen_transformer.attention_utils import AttentionUtils
from qwenimage.model.qwen_transformer.qwen_rope import QwenEmbedRope
from qwenimage.utils.exceptions import ModelConfigError, QwenImageException, ShapeMismatchError


class TestExceptionHierarchy:
    @pytest.mark.fast
    @pytest.mark.parametrize("error_class", [ModelConfigError, ShapeMismatchError])
    def test_package_errors_share_base_and_value_error(self, error_class):
        assert issubclass(error_class, QwenImageException)
        assert issubclass(error_class, ValueError)

    @pytest.mark.fast
    def test_odd_rope_axis_caught_as_package_error(self):
        with pytest.raises(QwenImageException):
            QwenEmbedRope(theta=10000, axes_dim=[16, 55, 57])

    @pytest.mark.fast
    def test_empty_segments_caught_as_package_error(self):
        rope = QwenEmbedRope(theta=10000, axes_dim=[16, 56, 56], scale_rope=True)
        with pytest.raises(QwenImageException):
            rope(video_fhw=[], txt_seq_lens=[3])

    @pytest.mark.fast
    def test_odd_feature_dimension_caught_as_package_error(self):
        x = mx.zeros((1, 2, 1, 5))
        with pytest.raises(QwenImageException):
            AttentionUtils.apply_rope_bshd(x, x, mx.zeros((2, 2)), mx.zeros((2, 2)))

    @pytest.mark.fast
    def test_invalid_config_caught_as_builtin_value_error(self):
        with pytest.raises(ValueError):
            Config(num_inference_steps=0)
