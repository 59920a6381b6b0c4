import mlx.core as mx
from mlx import nn


class QwenFeedForward(nn.Module):
    def __init__(self, dim: int = 3072, mult: int = 4):
        super().__init__()
        self.mlp_in = nn.Linear(dim, mult * dim)
        self.mlp_out = nn.Linear(mult * dim, dim)

    def __call__(self, hidden_states: mx.array) -> mx.array:
        return self.mlp_out(nn.gelu_approx(self.mlp_in(hidden_states)))
