"""Step-by-step driver for the joint text/audio model.

Each call to ``step`` consumes the previous text token and the source audio
codes of the current sub-step, and returns the next text token. The model's
own audio tokens come out ``acoustic_delay`` sub-steps later through
``last_completed_audio_tokens``.
"""

import logging
from typing import Optional, Protocol, Sequence

import torch

from .config import StreamConfig
from .delay import AcousticDelayBuffer
from .errors import ModelError
from .modules.depformer import SampleFn
from .sampling import TopKSampler, guided_logits

logger = logging.getLogger(__name__)


class MultistreamBackbone(Protocol):
    """What the stepper needs from the model."""

    def forward_step(
        self,
        text_tokens: torch.Tensor,
        audio_tokens: torch.Tensor,
        condition: Optional[torch.Tensor] = None,
    ) -> tuple[torch.Tensor, torch.Tensor]: ...

    def depformer_step(
        self, hidden: torch.Tensor, text_tokens: torch.Tensor, sample_fn: SampleFn
    ) -> torch.Tensor: ...

    def reset_streaming(self) -> None: ...


class MultistreamStepper:
    """Advances a multistream backbone one sub-step at a time.

    Owns the acoustic delay buffer and the two samplers for a single run.

    Args:
        backbone: Model implementing ``MultistreamBackbone``
        config: Codebook layout, delay and special tokens
        text_sampler: Sampler for text tokens
        audio_sampler: Sampler for audio tokens (independent generator)
        cfg_alpha: Guidance weight; None or 1.0 disables guidance
        max_steps: Optional cap on the number of sub-steps
        device: Device for the token tensors fed to the backbone
    """

    def __init__(
        self,
        backbone: MultistreamBackbone,
        config: StreamConfig,
        text_sampler: TopKSampler,
        audio_sampler: TopKSampler,
        cfg_alpha: Optional[float] = None,
        max_steps: Optional[int] = None,
        device: Optional[torch.device] = None,
    ):
        self.backbone = backbone
        self.config = config
        self.text_sampler = text_sampler
        self.audio_sampler = audio_sampler
        # alpha == 1.0 is exactly the positive branch: skip the second branch entirely
        self.cfg_alpha = None if cfg_alpha == 1.0 else cfg_alpha
        self.max_steps = max_steps
        self.device = device or torch.device("cpu")
        self.reset()

    def reset(self) -> None:
        """Start a new stream: empty delay buffer, re-seeded samplers, fresh model cache."""
        self.delay_buffer = AcousticDelayBuffer(self.config.delays(), self.config.audio_pad_token)
        self.step_idx = 0
        self.text_sampler.reset()
        self.audio_sampler.reset()
        self.backbone.reset_streaming()

    @property
    def batch_size(self) -> int:
        return 1 if self.cfg_alpha is None else 2

    def _sample_audio(self, logits: torch.Tensor) -> int:
        return self.audio_sampler.sample(guided_logits(logits, self.cfg_alpha))

    @torch.no_grad()
    def step(
        self,
        prev_text_token: int,
        input_audio_codes: Sequence[int],
        conditions: Optional[torch.Tensor] = None,
    ) -> int:
        """Run one sub-step and return the sampled text token.

        Args:
            prev_text_token: Text token emitted at the previous sub-step (start token first)
            input_audio_codes: Source audio codes for this sub-step, one per input codebook
            conditions: Condition tensor, batch-doubled under guidance

        Returns:
            Sampled text token id
        """
        cfg = self.config
        input_audio_codes = [int(c) for c in input_audio_codes]
        if len(input_audio_codes) != cfg.input_audio_codebooks:
            raise ModelError(
                f"Expected {cfg.input_audio_codebooks} input audio codes, got {len(input_audio_codes)}"
            )
        if self.max_steps is not None and self.step_idx >= self.max_steps:
            raise ModelError(f"Exceeded max_steps={self.max_steps}")

        gen = cfg.generated_audio_codebooks

        # Delayed view of everything before this step, taken before this step's writes
        model_input = self.delay_buffer.model_input()

        # Source codes arrive time-aligned: store them for this step, no delay
        for j, code in enumerate(input_audio_codes):
            self.delay_buffer.write(gen + j, code, delay=0)

        batch = self.batch_size
        audio_tokens = torch.tensor(model_input, dtype=torch.long, device=self.device)
        audio_tokens = audio_tokens.view(1, -1, 1).expand(batch, -1, -1)
        text_tokens = torch.full((batch, 1), prev_text_token, dtype=torch.long, device=self.device)

        text_logits, hidden = self.backbone.forward_step(text_tokens, audio_tokens, conditions)
        if text_logits.shape[0] != batch:
            raise ModelError(f"Backbone returned batch {text_logits.shape[0]}, expected {batch}")
        text_token = self.text_sampler.sample(guided_logits(text_logits, self.cfg_alpha))

        sampled = torch.full((batch, 1), text_token, dtype=torch.long, device=self.device)
        generated = self.backbone.depformer_step(hidden, sampled, self._sample_audio)
        if generated.shape[-1] != gen:
            raise ModelError(f"Depformer produced {generated.shape[-1]} codebooks, expected {gen}")

        for k in range(gen):
            self.delay_buffer.write(k, int(generated[0, k].item()))
        self.delay_buffer.advance()
        self.step_idx += 1
        return text_token

    def last_completed_audio_tokens(self) -> Optional[list[int]]:
        """Generated audio tokens of the most recent completed step.

        None for the first ``acoustic_delay`` sub-steps, and when the completed
        vector still holds pad tokens.
        """
        if self.step_idx <= self.config.acoustic_delay:
            return None
        row = self.delay_buffer.last_completed
        if row is None:
            return None
        tokens = row[: self.config.generated_audio_codebooks]
        if any(t >= self.config.audio_pad_token for t in tokens):
            return None
        return tokens
