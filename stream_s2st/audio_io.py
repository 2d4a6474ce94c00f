"""Audio file decoding, resampling and WAV writing."""

import logging
from pathlib import Path
from typing import Union

import numpy as np

from .config import SAMPLE_RATE
from .errors import InputError, IoError

logger = logging.getLogger(__name__)


def pcm_decode(path: Union[str, Path]) -> tuple[np.ndarray, int]:
    """Decode an audio file to mono float32 PCM.

    Args:
        path: Any format soundfile/libsndfile can read

    Returns:
        Tuple of (samples [num_samples], source sample rate)
    """
    import soundfile as sf

    try:
        audio, sample_rate = sf.read(str(path), dtype="float32", always_2d=True)
    except (OSError, RuntimeError) as e:
        raise InputError(f"Could not decode audio file {path}: {e}") from e

    # Down-mix [samples, channels] -> [samples]
    audio = audio.mean(axis=1) if audio.shape[1] > 1 else audio[:, 0]
    return np.ascontiguousarray(audio, dtype=np.float32), int(sample_rate)


def resample(audio: np.ndarray, orig_sr: int, target_sr: int = SAMPLE_RATE) -> np.ndarray:
    """Resample PCM to the target rate (no-op when the rates already match)."""
    if orig_sr == target_sr:
        return audio

    import librosa

    logger.info(f"Resampling {orig_sr} Hz -> {target_sr} Hz")
    return librosa.resample(audio, orig_sr=orig_sr, target_sr=target_sr).astype(np.float32)


def load_audio(path: Union[str, Path], target_sr: int = SAMPLE_RATE) -> np.ndarray:
    """Decode and resample an audio file to mono float32 PCM at ``target_sr``."""
    path = Path(path)
    if not path.is_file():
        raise InputError(f"Audio file not found: {path}")

    audio, sample_rate = pcm_decode(path)
    if audio.size == 0:
        raise InputError(f"Audio file is empty: {path}")
    return resample(audio, sample_rate, target_sr)


def write_wav(path: Union[str, Path], pcm: np.ndarray, sample_rate: int = SAMPLE_RATE) -> None:
    """Write mono float PCM as 16-bit WAV."""
    import soundfile as sf

    pcm = np.asarray(pcm, dtype=np.float32).reshape(-1)
    try:
        sf.write(str(path), np.clip(pcm, -1.0, 1.0), sample_rate, subtype="PCM_16")
    except (OSError, RuntimeError) as e:
        raise IoError(f"Could not write {path}: {e}") from e
    logger.info(f"Wrote {len(pcm) / sample_rate:.2f}s of audio to {path}")
