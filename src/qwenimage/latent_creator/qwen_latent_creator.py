import mlx.core as mx

from qwenimage.utils.exceptions import ShapeMismatchError


class QwenLatentCreator:
    @staticmethod
    def pack_latents(latents: mx.array, height: int, width: int, num_channels_latents: int = 16) -> mx.array:
        if latents.ndim != 4:
            raise ShapeMismatchError(f"Expected latents in BCHW format, got shape {latents.shape}")
        batch_size, channels, latent_height, latent_width = latents.shape
        patch_height = height // 16
        patch_width = width // 16
        if channels != num_channels_latents:
            raise ShapeMismatchError(f"Latent channels ({channels}) must match expected {num_channels_latents}")
        if latent_height != patch_height * 2 or latent_width != patch_width * 2:
            raise ShapeMismatchError(
                f"Latent grid {latent_height}x{latent_width} does not match "
                f"expected {patch_height * 2}x{patch_width * 2} for a {height}x{width} image"
            )

        latents = mx.reshape(latents, (batch_size, channels, patch_height, 2, patch_width, 2))
        latents = mx.transpose(latents, (0, 2, 4, 1, 3, 5))
        return mx.reshape(latents, (batch_size, patch_height * patch_width, channels * 4))

    @staticmethod
    def unpack_latents(latents: mx.array, height: int, width: int, num_channels_latents: int = 16) -> mx.array:
        if latents.ndim != 3:
            raise ShapeMismatchError(f"Expected tokens with shape [batch, tokens, features], got {latents.shape}")
        batch_size, num_tokens, features = latents.shape
        patch_height = height // 16
        patch_width = width // 16
        if features != num_channels_latents * 4:
            raise ShapeMismatchError(f"Token feature size ({features}) must match {num_channels_latents * 4}")
        if num_tokens != patch_height * patch_width:
            raise ShapeMismatchError(f"Token count ({num_tokens}) must match {patch_height * patch_width}")

        latents = mx.reshape(latents, (batch_size, patch_height, patch_width, num_channels_latents, 2, 2))
        latents = mx.transpose(latents, (0, 3, 1, 4, 2, 5))
        return mx.reshape(latents, (batch_size, num_channels_latents, patch_height * 2, patch_width * 2))
