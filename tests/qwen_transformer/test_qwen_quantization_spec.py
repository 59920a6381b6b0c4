import dataclasses

import pytest

from qwenimage.model.qwen_transformer.qwen_quantization_spec import QwenQuantizationSpec
from qwenimage.utils.exceptions import ModelConfigError


class TestQwenQuantizationSpec:
    @pytest.mark.fast
    def test_defaults(self):
        spec = QwenQuantizationSpec()
        assert (spec.group_size, spec.bits, spec.mode) == (64, 8, "affine")

    @pytest.mark.fast
    def test_is_immutable(self):
        spec = QwenQuantizationSpec()
        with pytest.raises(dataclasses.FrozenInstanceError):
            spec.bits = 4

    @pytest.mark.fast
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"group_size": 16},
            {"bits": 7},
            {"mode": "nf4"},
            {"mode": "mxfp4", "group_size": 64, "bits": 4},
        ],
    )
    def test_invalid_settings_rejected(self, kwargs):
        with pytest.raises(ModelConfigError):
            QwenQuantizationSpec(**kwargs)

    @pytest.mark.fast
    def test_mxfp4(self):
        spec = QwenQuantizationSpec(group_size=32, bits=4, mode="mxfp4")
        assert spec.mode == "mxfp4"
