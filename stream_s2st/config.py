"""Run configuration for streaming generation.

Two layers:
- ``StreamConfig``: the numbers the generation loop depends on (codebook
  counts, delay, special tokens). Derived from the model config, immutable.
- ``GenerationConfig`` / ``SamplingConfig``: per-run knobs (seed, CFG, framing).

Model hyper-parameters live in ``MultistreamConfig`` (see modules/multistream_lm.py).
"""

from dataclasses import dataclass, field
from typing import Optional

from .errors import ConfigError

# Mimi runs at 12.5 Hz on 24 kHz audio: 24000 / 12.5 = 1920 samples per frame
SAMPLE_RATE = 24000
FRAME_SIZE = 1920

# 0.5 s of trailing silence flushes codec and model latency
PAD_SAMPLES = 12000

# Upper bound on frames per run (~200 s of audio)
MAX_FRAMES = 2500

# Steps allowed beyond one per frame before a run is aborted
STEP_MARGIN = 20

TEXT_EOP_TOKEN = 0
TEXT_PAD_TOKEN = 3


@dataclass(frozen=True)
class StreamConfig:
    """Immutable per-run numbers consumed by the stepper and the orchestrator."""

    audio_vocab_size: int
    generated_audio_codebooks: int
    input_audio_codebooks: int
    text_start_token: int
    acoustic_delay: int = 2
    text_eop_token: int = TEXT_EOP_TOKEN
    text_pad_token: int = TEXT_PAD_TOKEN

    def __post_init__(self):
        if self.generated_audio_codebooks <= 0:
            raise ConfigError(
                f"generated_audio_codebooks must be positive, got {self.generated_audio_codebooks}"
            )
        if self.input_audio_codebooks < 0:
            raise ConfigError(
                f"input_audio_codebooks must be >= 0, got {self.input_audio_codebooks}"
            )
        if self.acoustic_delay < 0:
            raise ConfigError(f"acoustic_delay must be >= 0, got {self.acoustic_delay}")
        if self.audio_vocab_size < 2:
            raise ConfigError(f"audio_vocab_size too small: {self.audio_vocab_size}")

    @property
    def total_codebooks(self) -> int:
        return self.input_audio_codebooks + self.generated_audio_codebooks

    @property
    def audio_pad_token(self) -> int:
        """Last id of the audio vocabulary, fed to the model before real tokens exist."""
        return self.audio_vocab_size - 1

    def delays(self) -> list[int]:
        """Per-codebook delays over all codebooks (generated first, then input).

        The first codebook of each group is semantic and is not delayed; the
        acoustic codebooks lag by ``acoustic_delay`` steps.
        """
        delays = []
        for k in range(self.total_codebooks):
            semantic = k == 0 or k == self.generated_audio_codebooks
            delays.append(0 if semantic else self.acoustic_delay)
        return delays

    def is_special_text_token(self, token: int) -> bool:
        return token in (self.text_eop_token, self.text_pad_token)

    @classmethod
    def from_codebooks(
        cls,
        audio_codebooks: int,
        generated_audio_codebooks: int,
        audio_vocab_size: int,
        text_start_token: int,
        acoustic_delay: int = 2,
    ) -> "StreamConfig":
        """Split a model's total codebook count into input and generated groups."""
        if generated_audio_codebooks > audio_codebooks:
            raise ConfigError(
                f"Model declares {audio_codebooks} codebooks but "
                f"{generated_audio_codebooks} generated codebooks"
            )
        return cls(
            audio_vocab_size=audio_vocab_size,
            generated_audio_codebooks=generated_audio_codebooks,
            input_audio_codebooks=audio_codebooks - generated_audio_codebooks,
            text_start_token=text_start_token,
            acoustic_delay=acoustic_delay,
        )


@dataclass
class SamplingConfig:
    """Top-k / temperature for one sampler."""

    top_k: int
    temperature: float = 0.8


@dataclass
class GenerationConfig:
    """Configuration for one generation run."""

    seed: int = 299792458
    cfg_alpha: Optional[float] = None

    # Audio framing
    sample_rate: int = SAMPLE_RATE
    frame_size: int = FRAME_SIZE
    pad_samples: int = PAD_SAMPLES
    max_frames: int = MAX_FRAMES

    # Sampling (separate text / audio samplers, both seeded with `seed`)
    text_sampling: SamplingConfig = field(default_factory=lambda: SamplingConfig(top_k=25))
    audio_sampling: SamplingConfig = field(default_factory=lambda: SamplingConfig(top_k=250))

    # Condition anchors used by the LUT conditioner (positive / negative for CFG)
    condition_category: str = "description"
    positive_condition: str = "very_good"
    negative_condition: str = "very_bad"

    def __post_init__(self):
        if self.frame_size <= 0:
            raise ConfigError(f"frame_size must be positive, got {self.frame_size}")
        if self.max_frames <= 0:
            raise ConfigError(f"max_frames must be positive, got {self.max_frames}")
        if self.pad_samples < 0:
            raise ConfigError(f"pad_samples must be >= 0, got {self.pad_samples}")

    @property
    def effective_cfg_alpha(self) -> Optional[float]:
        """CFG alpha with 1.0 normalised to None (1.0 is the positive branch alone)."""
        if self.cfg_alpha is None or self.cfg_alpha == 1.0:
            return None
        return self.cfg_alpha
