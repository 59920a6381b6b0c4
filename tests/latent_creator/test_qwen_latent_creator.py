import mlx.core as mx
import pytest

from qwenimage.latent_creator.qwen_latent_creator import QwenLatentCreator
from qwenimage.utils.exceptions import ShapeMismatchError


class TestQwenLatentCreator:
    @pytest.mark.fast
    @pytest.mark.parametrize("batch,height,width", [(1, 64, 64), (2, 64, 96), (1, 1024, 512)])
    def test_round_trip(self, batch, height, width):
        latents = mx.random.normal((batch, 16, height // 8, width // 8))

        packed = QwenLatentCreator.pack_latents(latents, height, width)
        unpacked = QwenLatentCreator.unpack_latents(packed, height, width)

        assert packed.shape == (batch, (height // 16) * (width // 16), 64)
        assert mx.array_equal(unpacked, latents)

    @pytest.mark.fast
    def test_patch_layout(self):
        latents = mx.random.normal((1, 16, 4, 4))

        packed = QwenLatentCreator.pack_latents(latents, 32, 32)

        # Token 1 is the patch at row 0, column 1; features are channel-major over the 2x2 patch
        expected = mx.reshape(latents[0, :, 0:2, 2:4], (64,))
        assert mx.array_equal(packed[0, 1], expected)

    @pytest.mark.fast
    def test_wrong_channel_count_rejected(self):
        with pytest.raises(ShapeMismatchError):
            QwenLatentCreator.pack_latents(mx.zeros((1, 8, 8, 8)), 64, 64)

    @pytest.mark.fast
    def test_wrong_grid_rejected(self):
        with pytest.raises(ShapeMismatchError):
            QwenLatentCreator.pack_latents(mx.zeros((1, 16, 8, 8)), 128, 64)

    @pytest.mark.fast
    def test_wrong_token_count_rejected(self):
        with pytest.raises(ShapeMismatchError):
            QwenLatentCreator.unpack_latents(mx.zeros((1, 15, 64)), 64, 64)
