from __future__ import annotations

import logging
from typing import NamedTuple

import mlx.core as mx
import numpy as np
from mlx import nn

from qwenimage.utils.exceptions import ModelConfigError, ShapeMismatchError

logger = logging.getLogger(__name__)

VideoSegment = tuple[int, int, int]


class RotaryPair(NamedTuple):
    """Rotation tables for the joint sequence, each shaped [1, 1, S, D/2, 2, 2] in float32."""

    image: mx.array
    text: mx.array


class QwenEmbedRope(nn.Module):
    MAX_INDEX = 4096

    def __init__(self, theta: int, axes_dim: list[int] | tuple[int, ...], scale_rope: bool = False):
        super().__init__()
        if len(axes_dim) != 3:
            raise ModelConfigError(f"Expected [frame, height, width] dimensions, got {list(axes_dim)}")
        self.theta = theta
        self.axes_dim = list(axes_dim)
        self.scale_rope = scale_rope

        pos_index = np.arange(QwenEmbedRope.MAX_INDEX, dtype=np.int32)
        neg_index = (np.arange(QwenEmbedRope.MAX_INDEX, dtype=np.int32)[::-1] * -1) - 1

        # [MAX_INDEX, sum(axes_dim) // 2, 2] holding (cos, sin), axes laid out frame, height, width
        self.pos_freqs = np.concatenate(
            [QwenEmbedRope._rope_params(pos_index, dim, self.theta) for dim in self.axes_dim],
            axis=1,
        )
        self.neg_freqs = np.concatenate(
            [QwenEmbedRope._rope_params(neg_index, dim, self.theta) for dim in self.axes_dim],
            axis=1,
        )
        self.axes_splits = np.cumsum([dim // 2 for dim in self.axes_dim])[:-1]
        logger.debug(f"Precomputed rotary tables: axes={self.axes_dim}, theta={theta}, scale_rope={scale_rope}")

    def __call__(
        self,
        video_fhw: VideoSegment | list[VideoSegment],
        txt_seq_lens: list[int],
    ) -> RotaryPair:
        if not isinstance(video_fhw, list):
            video_fhw = [video_fhw]
        if len(video_fhw) == 0:
            raise ShapeMismatchError("At least one image segment is required")

        vid_freqs = []
        max_vid_index = 0
        for idx, (frame, height, width) in enumerate(video_fhw):
            vid_freqs.append(self._compute_video_freqs(frame, height, width, idx))
            if self.scale_rope:
                max_vid_index = max(height // 2, width // 2, max_vid_index)
            else:
                max_vid_index = max(height, width, max_vid_index)

        vid_freqs = np.concatenate(vid_freqs, axis=0)

        max_len = max(txt_seq_lens, default=0)
        txt_freqs = self.pos_freqs[max_vid_index : max_vid_index + max_len]
        logger.debug(
            f"Rotary pair: segments={video_fhw}, image_tokens={vid_freqs.shape[0]}, "
            f"text_tokens={max_len}, text_offset={max_vid_index}"
        )

        return RotaryPair(
            image=QwenEmbedRope._rotation_matrix(vid_freqs[..., 0], vid_freqs[..., 1]),
            text=QwenEmbedRope._rotation_matrix(txt_freqs[..., 0], txt_freqs[..., 1]),
        )

    def _compute_video_freqs(self, frame: int, height: int, width: int, idx: int = 0) -> np.ndarray:
        seq_lens = frame * height * width

        freqs_frame = self._axis_table(self.pos_freqs, 0)[idx : idx + frame]
        freqs_frame = freqs_frame.reshape(frame, 1, 1, -1, 2)
        freqs_frame = np.broadcast_to(freqs_frame, (frame, height, width, freqs_frame.shape[-2], 2))

        freqs_height = self._axis_freqs(axis=1, length=height)
        freqs_height = freqs_height.reshape(1, height, 1, -1, 2)
        freqs_height = np.broadcast_to(freqs_height, (frame, height, width, freqs_height.shape[-2], 2))

        freqs_width = self._axis_freqs(axis=2, length=width)
        freqs_width = freqs_width.reshape(1, 1, width, -1, 2)
        freqs_width = np.broadcast_to(freqs_width, (frame, height, width, freqs_width.shape[-2], 2))

        freqs = np.concatenate([freqs_frame, freqs_height, freqs_width], axis=-2)
        return freqs.reshape(seq_lens, -1, 2)

    def _axis_freqs(self, axis: int, length: int) -> np.ndarray:
        pos_freqs = self._axis_table(self.pos_freqs, axis)
        if not self.scale_rope:
            return pos_freqs[:length]
        # Negative half first so the phase is centered on the middle of the axis
        half = length // 2
        neg_freqs = self._axis_table(self.neg_freqs, axis)
        return np.concatenate([neg_freqs[neg_freqs.shape[0] - (length - half) :], pos_freqs[:half]], axis=0)

    def _axis_table(self, freqs: np.ndarray, axis: int) -> np.ndarray:
        return np.split(freqs, self.axes_splits, axis=1)[axis]

    @staticmethod
    def _rope_params(index: np.ndarray, dim: int, theta: int) -> np.ndarray:
        if dim % 2 != 0:
            raise ModelConfigError(f"RoPE dimension must be even, got {dim}")
        scales = np.arange(0, dim, 2, dtype=np.float32) / dim
        omega = 1.0 / (theta**scales)
        freqs = np.outer(index.astype(np.float32), omega)
        return np.stack([np.cos(freqs), np.sin(freqs)], axis=-1)

    @staticmethod
    def _rotation_matrix(cos: np.ndarray, sin: np.ndarray) -> mx.array:
        row0 = np.stack([cos, -sin], axis=-1)
        row1 = np.stack([sin, cos], axis=-1)
        rot = np.stack([row0, row1], axis=-2).astype(np.float32)
        return mx.array(rot)[None, None]
