from __future__ import annotations

import logging
import numbers

import mlx.core as mx
from mlx import nn

from qwenimage.config.config import Config
from qwenimage.config.transformer_config import TransformerConfig
from qwenimage.latent_creator.qwen_latent_creator import QwenLatentCreator
from qwenimage.model.qwen_transformer.qwen_ada_layer_norm_continuous import QwenAdaLayerNormContinuous
from qwenimage.model.qwen_transformer.qwen_quantization_spec import QwenQuantizationSpec
from qwenimage.model.qwen_transformer.qwen_rope import QwenEmbedRope, RotaryPair, VideoSegment
from qwenimage.model.qwen_transformer.qwen_time_text_embed import QwenTimeTextEmbed
from qwenimage.model.qwen_transformer.qwen_transformer_block import QwenTransformerBlock
from qwenimage.model.qwen_transformer.qwen_transformer_rms_norm import QwenTransformerRMSNorm
from qwenimage.utils.exceptions import ShapeMismatchError

logger = logging.getLogger(__name__)


class QwenTransformer(nn.Module):
    def __init__(self, transformer_config: TransformerConfig | None = None) -> None:
        super().__init__()
        self.transformer_config = transformer_config or TransformerConfig.qwen_image()
        cfg = self.transformer_config
        self.inner_dim = cfg.inner_dim
        self.img_in = nn.Linear(cfg.in_channels, self.inner_dim)
        self.txt_norm = QwenTransformerRMSNorm(cfg.joint_attention_dim, eps=1e-6)
        self.txt_in = nn.Linear(cfg.joint_attention_dim, self.inner_dim)
        self.time_text_embed = QwenTimeTextEmbed(timestep_proj_dim=cfg.timestep_proj_dim, inner_dim=self.inner_dim)
        self.pos_embed = QwenEmbedRope(theta=cfg.rope_theta, axes_dim=list(cfg.axes_dims_rope), scale_rope=cfg.scale_rope)  # fmt: off
        self.transformer_blocks = [QwenTransformerBlock(dim=self.inner_dim, num_heads=cfg.num_attention_heads, head_dim=cfg.attention_head_dim) for _ in range(cfg.num_layers)]  # fmt: off
        self.norm_out = QwenAdaLayerNormContinuous(self.inner_dim, self.inner_dim)
        self.proj_out = nn.Linear(self.inner_dim, cfg.out_features)
        logger.debug(
            f"Built transformer: layers={cfg.num_layers}, heads={cfg.num_attention_heads}, "
            f"head_dim={cfg.attention_head_dim}, inner_dim={self.inner_dim}"
        )

    def set_attention_quantization(self, spec: QwenQuantizationSpec | None) -> None:
        if spec is not None and self.transformer_config.attention_head_dim % spec.group_size != 0:
            raise ShapeMismatchError(
                f"Head dimension {self.transformer_config.attention_head_dim} is not divisible "
                f"by quantization group size {spec.group_size}"
            )
        for block in self.transformer_blocks:
            block.set_attention_quantization(spec)
        if spec is None:
            logger.debug("Attention quantization disabled")
        else:
            logger.debug(f"Attention quantization enabled: {spec}")

    def __call__(
        self,
        t: int | float,
        config: Config,
        hidden_states: mx.array,
        encoder_hidden_states: mx.array,
        encoder_hidden_states_mask: mx.array,
        image_segments: list[VideoSegment] | None = None,
        image_rotary_emb: RotaryPair | None = None,
        attention_mask: mx.array | None = None,
    ) -> mx.array:
        hidden_states = self.img_in(hidden_states)
        batch_size = hidden_states.shape[0]
        timestep = QwenTransformer._compute_timestep(t, config)
        timestep = mx.broadcast_to(timestep, (batch_size,)).astype(hidden_states.dtype)
        encoder_hidden_states = self.txt_norm(encoder_hidden_states)
        encoder_hidden_states = self.txt_in(encoder_hidden_states)
        text_embeddings = self.time_text_embed(timestep, hidden_states)
        if image_rotary_emb is None:
            image_rotary_emb = QwenTransformer._compute_rotary_embeddings(
                encoder_hidden_states_mask=encoder_hidden_states_mask,
                pos_embed=self.pos_embed,
                config=config,
                image_segments=image_segments,
            )

        for block in self.transformer_blocks:
            encoder_hidden_states, hidden_states = block(
                hidden_states=hidden_states,
                encoder_hidden_states=encoder_hidden_states,
                encoder_hidden_states_mask=encoder_hidden_states_mask,
                text_embeddings=text_embeddings,
                image_rotary_emb=image_rotary_emb,
                attention_mask=attention_mask,
            )

        hidden_states = self.norm_out(hidden_states, text_embeddings)
        return self.proj_out(hidden_states)

    def forward_latents(
        self,
        t: int | float,
        config: Config,
        latents: mx.array,
        encoder_hidden_states: mx.array,
        encoder_hidden_states_mask: mx.array,
    ) -> mx.array:
        packed = QwenLatentCreator.pack_latents(latents, config.height, config.width)
        noise = self(
            t=t,
            config=config,
            hidden_states=packed,
            encoder_hidden_states=encoder_hidden_states,
            encoder_hidden_states_mask=encoder_hidden_states_mask,
        )
        return QwenLatentCreator.unpack_latents(noise, config.height, config.width)

    @staticmethod
    def _compute_timestep(t: int | float, config: Config) -> mx.array:
        if isinstance(t, bool):
            raise TypeError(f"Timestep must be a schedule index or a sigma value, got {t!r}")
        if isinstance(t, numbers.Integral):
            t = int(t)
            sigmas = config.sigmas
            if not 0 <= t < sigmas.shape[0]:
                raise ShapeMismatchError(f"Timestep index {t} is outside the {sigmas.shape[0]} step schedule")
            return sigmas[t : t + 1].astype(mx.float32)
        return mx.array([float(t)], dtype=mx.float32)

    @staticmethod
    def _compute_rotary_embeddings(
        encoder_hidden_states_mask: mx.array,
        pos_embed: QwenEmbedRope,
        config: Config,
        image_segments: list[VideoSegment] | None = None,
    ) -> RotaryPair:
        if image_segments is None:
            image_segments = [(1, config.latent_height, config.latent_width)]
        txt_seq_lens = [int(n) for n in mx.sum(encoder_hidden_states_mask.astype(mx.int32), axis=1).tolist()]
        return pos_embed(video_fhw=image_segments, txt_seq_lens=txt_seq_lens)
