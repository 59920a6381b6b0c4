import logging

import mlx.core as mx

from qwenimage.utils.exceptions import ModelConfigError

logger = logging.getLogger(__name__)


class Config:
    def __init__(
        self,
        num_inference_steps: int = 20,
        height: int = 1024,
        width: int = 1024,
        guidance: float = 4.0,
        sigma_shift: bool = False,
    ):
        if num_inference_steps < 1:
            raise ModelConfigError(f"At least one inference step is required, got {num_inference_steps}")

        # Ensure dimensions are multiples of 16
        if width % 16 != 0 or height % 16 != 0:
            logger.warning("Width and height should be multiples of 16. Rounding down.")

        self._num_inference_steps = num_inference_steps
        self._height = 16 * (height // 16)
        self._width = 16 * (width // 16)
        self._guidance = guidance
        self._sigma_shift = sigma_shift
        self._sigmas = None

    @property
    def height(self) -> int:
        return self._height

    @property
    def width(self) -> int:
        return self._width

    @property
    def latent_height(self) -> int:
        return self._height // 16

    @property
    def latent_width(self) -> int:
        return self._width // 16

    @property
    def image_seq_len(self) -> int:
        return self.latent_height * self.latent_width

    @property
    def guidance(self) -> float:
        return self._guidance

    @property
    def num_inference_steps(self) -> int:
        return self._num_inference_steps

    @property
    def sigma_shift(self) -> bool:
        return self._sigma_shift

    @property
    def sigmas(self) -> mx.array:
        if self._sigmas is None:
            self._sigmas = self._compute_sigmas()
        return self._sigmas

    def _compute_sigmas(self) -> mx.array:
        sigmas = mx.linspace(1.0, 1.0 / self._num_inference_steps, self._num_inference_steps)
        sigmas = mx.concatenate([sigmas.astype(mx.float32), mx.zeros(1)])
        if not self._sigma_shift:
            return sigmas

        y1 = 0.5
        x1 = 256
        m = (1.15 - y1) / (4096 - x1)
        b = y1 - m * x1
        mu = mx.array(m * self._width * self._height / 256 + b)
        shifted_sigmas = mx.exp(mu) / (mx.exp(mu) + (1 / sigmas - 1))
        shifted_sigmas[-1] = 0
        return shifted_sigmas
