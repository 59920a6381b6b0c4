from typing import NamedTuple

import mlx.core as mx
from mlx import nn


class ModulatedStream(NamedTuple):
    modulated: mx.array
    gate: mx.array
    mod2: mx.array


class QwenLayerNorm(nn.Module):
    def __init__(self, dim: int = 3072):
        super().__init__()
        self.mod_linear = nn.Linear(dim, 6 * dim)
        self.norm = nn.LayerNorm(dims=dim, eps=1e-6, affine=False)

    def __call__(self, hidden_states: mx.array, text_embeddings: mx.array) -> ModulatedStream:
        mod_params = self.mod_linear(nn.silu(text_embeddings))
        mod1, mod2 = mx.split(mod_params, 2, axis=-1)
        modulated, gate1 = QwenLayerNorm.modulate(self.norm(hidden_states), mod1)
        return ModulatedStream(modulated=modulated, gate=gate1, mod2=mod2)

    @staticmethod
    def modulate(x: mx.array, mod_params: mx.array) -> tuple[mx.array, mx.array]:
        shift, scale, gate = mx.split(mod_params, 3, axis=-1)
        return x * (1 + scale[:, None, :]) + shift[:, None, :], gate[:, None, :]
