"""Streaming audio codec adapters.

Both directions are causal and stateful: encode may hold samples back until a
whole codec frame is available (returning None), and decode keeps its own
transformer cache between calls. Adapters never reorder; the caller is
responsible for feeding tokens in temporal order.
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np
import torch

from .config import FRAME_SIZE, SAMPLE_RATE
from .errors import ModelError

if TYPE_CHECKING:
    from transformers import MimiModel

logger = logging.getLogger(__name__)


class CodecAdapter(ABC):
    """Per-frame streaming codec."""

    sample_rate: int = SAMPLE_RATE
    frame_size: int = FRAME_SIZE

    @abstractmethod
    def encode_step(self, frame: np.ndarray) -> Optional[torch.Tensor]:
        """Encode one PCM frame.

        Returns:
            Codes [codebooks, sub_steps], or None while the codec is buffering
        """

    @abstractmethod
    def decode_step(self, audio_tokens: Sequence[int]) -> Optional[np.ndarray]:
        """Decode one generated audio-token vector to a PCM chunk (None if nothing is ready)."""

    def reset(self) -> None:
        """Clear streaming state before a new stream."""


class MimiCodec(CodecAdapter):
    """Mimi (kyutai/mimi) through ``transformers.MimiModel``.

    Input PCM is buffered until a whole codec frame (1920 samples at 12.5 Hz)
    is available. Encoding runs in streaming mode: the causal convolution
    padding cache and the encoder transformer cache are carried across calls.
    Decoding carries the decoder transformer cache; the upsampling
    convolutions of ``MimiModel.decode`` keep no state between calls.

    Args:
        model: Loaded MimiModel in eval mode
        num_codebooks: Quantizers used to encode (and expected when decoding)
    """

    MIMI_SAMPLE_RATE = 24000

    def __init__(self, model: "MimiModel", num_codebooks: int = 8):
        self.model = model
        # The decoder transformer only returns its cache under config.use_cache
        self.model.config.use_cache = True
        self.num_codebooks = num_codebooks
        self.sample_rate = self.MIMI_SAMPLE_RATE
        frame_rate = getattr(model.config, "frame_rate", 12.5)
        self.frame_size = int(round(self.sample_rate / frame_rate))
        self.reset()

    @classmethod
    def from_pretrained(
        cls,
        repo_id: str = "kyutai/mimi",
        num_codebooks: int = 8,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> "MimiCodec":
        """Load Mimi for streaming encode/decode."""
        from transformers import MimiModel

        model = MimiModel.from_pretrained(repo_id)
        model.requires_grad_(False)
        model.eval()

        if device is not None or dtype is not None:
            model = model.to(device=device, dtype=dtype)

        logger.info(f"Loaded Mimi model from {repo_id} ({num_codebooks} codebooks)")
        return cls(model, num_codebooks=num_codebooks)

    @property
    def device(self) -> torch.device:
        return next(self.model.parameters()).device

    def reset(self) -> None:
        self._pending = np.zeros(0, dtype=np.float32)
        self._encoder_cache = None
        self._padding_cache = None
        self._decoder_cache = None

    @torch.no_grad()
    def encode_step(self, frame: np.ndarray) -> Optional[torch.Tensor]:
        self._pending = np.concatenate([self._pending, np.asarray(frame, dtype=np.float32)])
        num_frames = len(self._pending) // self.frame_size
        if num_frames == 0:
            return None

        take = num_frames * self.frame_size
        chunk, self._pending = self._pending[:take], self._pending[take:]
        audio = torch.from_numpy(chunk).to(self.device).view(1, 1, -1)
        audio = audio.to(next(self.model.parameters()).dtype)

        try:
            outputs = self.model.encode(
                audio,
                num_quantizers=self.num_codebooks,
                encoder_past_key_values=self._encoder_cache,
                padding_cache=self._padding_cache,
                use_streaming=True,
                return_dict=True,
            )
        except RuntimeError as e:
            raise ModelError(f"Mimi encode failed for chunk of {take} samples: {e}") from e

        self._encoder_cache = outputs.encoder_past_key_values
        self._padding_cache = outputs.padding_cache
        codes = outputs.audio_codes  # [batch, codebooks, steps]
        if codes is None or codes.shape[-1] == 0:
            return None
        return codes[0].long().cpu()

    @torch.no_grad()
    def decode_step(self, audio_tokens: Sequence[int]) -> Optional[np.ndarray]:
        if not 0 < len(audio_tokens) <= self.num_codebooks:
            raise ModelError(
                f"Mimi decoder takes 1 to {self.num_codebooks} codebooks, got {len(audio_tokens)}"
            )
        codes = torch.tensor(list(audio_tokens), dtype=torch.long, device=self.device).view(1, -1, 1)

        try:
            outputs = self.model.decode(
                codes,
                decoder_past_key_values=self._decoder_cache,
                return_dict=True,
            )
        except RuntimeError as e:
            raise ModelError(f"Mimi decode failed: {e}") from e

        self._decoder_cache = outputs.decoder_past_key_values
        audio = outputs.audio_values  # [batch, 1, samples]
        if audio is None or audio.numel() == 0:
            return None
        return audio[0, 0].float().cpu().numpy()
