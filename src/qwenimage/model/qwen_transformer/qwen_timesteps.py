import math

import mlx.core as mx
from mlx import nn

from qwenimage.utils.exceptions import ShapeMismatchError


class QwenTimesteps(nn.Module):
    def __init__(self, proj_dim: int = 256, scale: float = 1000.0, max_period: int = 10000):
        super().__init__()
        self.proj_dim = proj_dim
        self.scale = scale
        self.max_period = max_period

    def __call__(self, timesteps: mx.array) -> mx.array:
        """
        Sinusoidal embedding of a 1-D batch of timesteps, returned as [cos, sin].
        """
        if timesteps.ndim != 1:
            raise ShapeMismatchError(f"Timesteps should be a 1d-array, got shape {timesteps.shape}")

        half_dim = self.proj_dim // 2
        exponent = -math.log(self.max_period) * mx.arange(0, half_dim, dtype=mx.float32) / half_dim
        freqs = mx.exp(exponent)

        emb = timesteps.astype(mx.float32)[:, None] * freqs[None, :]
        emb = self.scale * emb
        emb = mx.concatenate([mx.sin(emb), mx.cos(emb)], axis=-1)

        # Second half first: the learned projection expects [cos, sin]
        return mx.concatenate([emb[:, half_dim:], emb[:, :half_dim]], axis=-1)
