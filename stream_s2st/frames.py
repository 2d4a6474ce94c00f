"""Fixed-size framing of padded PCM input."""

from typing import Iterator

import numpy as np

from .config import FRAME_SIZE, MAX_FRAMES, PAD_SAMPLES
from .errors import ConfigError, InputError


def pad_pcm(pcm: np.ndarray, pad_samples: int = PAD_SAMPLES) -> np.ndarray:
    """Append ``pad_samples`` of silence to the tail of the stream."""
    pcm = np.asarray(pcm, dtype=np.float32)
    if pad_samples <= 0:
        return pcm
    return np.concatenate([pcm, np.zeros(pad_samples, dtype=np.float32)])


def max_steps_for(num_samples: int, frame_size: int = FRAME_SIZE, max_frames: int = MAX_FRAMES) -> int:
    """Number of frames a run will process: whole frames only, capped at ``max_frames``."""
    return min(num_samples // frame_size, max_frames)


class AudioFrameSource:
    """Slices a padded PCM stream into read-only frames of exactly ``frame_size``.

    The trailing remainder (less than one frame) is dropped. The source is a
    one-shot iterator: once exhausted it yields nothing more.

    Args:
        pcm: Mono PCM [num_samples] at the codec sample rate, already padded
        frame_size: Samples per frame (1920 = 80 ms at 24 kHz)
        max_frames: Cap on the number of frames
    """

    def __init__(self, pcm: np.ndarray, frame_size: int = FRAME_SIZE, max_frames: int = MAX_FRAMES):
        if frame_size <= 0:
            raise ConfigError(f"frame_size must be positive, got {frame_size}")
        pcm = np.asarray(pcm, dtype=np.float32)
        if pcm.ndim != 1:
            raise InputError(f"Expected mono PCM [samples], got shape {pcm.shape}")

        self.frame_size = frame_size
        self.num_frames = max_steps_for(len(pcm), frame_size, max_frames)

        # Private read-only copy so frames cannot be mutated after they are produced
        self._pcm = pcm[: self.num_frames * frame_size].copy()
        self._pcm.setflags(write=False)
        self._index = 0

    def __len__(self) -> int:
        return self.num_frames

    def __iter__(self) -> Iterator[np.ndarray]:
        return self

    def __next__(self) -> np.ndarray:
        if self._index >= self.num_frames:
            raise StopIteration
        start = self._index * self.frame_size
        self._index += 1
        return self._pcm[start : start + self.frame_size]
