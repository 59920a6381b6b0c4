from dataclasses import dataclass

from qwenimage.utils.exceptions import ModelConfigError


@dataclass(frozen=True)
class TransformerConfig:
    in_channels: int = 64
    out_channels: int = 16
    num_layers: int = 60
    attention_head_dim: int = 128
    num_attention_heads: int = 24
    joint_attention_dim: int = 3584
    patch_size: int = 2
    timestep_proj_dim: int = 256
    rope_theta: int = 10000
    axes_dims_rope: tuple[int, int, int] = (16, 56, 56)
    scale_rope: bool = True

    def __post_init__(self):
        sizes = {
            "in_channels": self.in_channels,
            "out_channels": self.out_channels,
            "num_layers": self.num_layers,
            "attention_head_dim": self.attention_head_dim,
            "num_attention_heads": self.num_attention_heads,
            "joint_attention_dim": self.joint_attention_dim,
            "patch_size": self.patch_size,
            "timestep_proj_dim": self.timestep_proj_dim,
        }
        for name, value in sizes.items():
            if value <= 0:
                raise ModelConfigError(f"{name} must be positive, got {value}")

        if len(self.axes_dims_rope) != 3:
            raise ModelConfigError(f"Expected [frame, height, width] rope dimensions, got {self.axes_dims_rope}")
        if any(dim % 2 != 0 for dim in self.axes_dims_rope):
            raise ModelConfigError(f"RoPE axis dimensions must be even, got {self.axes_dims_rope}")
        if sum(self.axes_dims_rope) != self.attention_head_dim:
            raise ModelConfigError(
                f"RoPE axis dimensions {self.axes_dims_rope} must sum to attention_head_dim={self.attention_head_dim}"
            )
        if self.timestep_proj_dim % 2 != 0:
            raise ModelConfigError(f"timestep_proj_dim must be even, got {self.timestep_proj_dim}")

    @property
    def inner_dim(self) -> int:
        return self.num_attention_heads * self.attention_head_dim

    @property
    def out_features(self) -> int:
        return self.patch_size * self.patch_size * self.out_channels

    @staticmethod
    def qwen_image() -> "TransformerConfig":
        return TransformerConfig()
