import mlx.core as mx

from qwenimage.config.config import Config
from qwenimage.utils.exceptions import ShapeMismatchError


class GuidanceUtil:
    @staticmethod
    def apply_classifier_free_guidance(
        unconditional: mx.array,
        conditional: mx.array,
        guidance_scale: float,
    ) -> mx.array:
        guided = unconditional + (conditional - unconditional) * guidance_scale
        return guided.astype(unconditional.dtype)

    @staticmethod
    def stack_latents_for_guidance(latents: mx.array) -> mx.array:
        return mx.concatenate([latents, latents], axis=0)

    @staticmethod
    def split_guidance_latents(latents: mx.array) -> tuple[mx.array, mx.array]:
        if latents.shape[0] < 2:
            raise ShapeMismatchError(f"Guidance latents require at least two samples, got {latents.shape[0]}")
        return latents[:1], latents[1:]

    @staticmethod
    def compute_guided_noise(noise: mx.array, config: Config) -> mx.array:
        unconditional, conditional = GuidanceUtil.split_guidance_latents(noise)
        return GuidanceUtil.apply_classifier_free_guidance(unconditional, conditional, config.guidance)
