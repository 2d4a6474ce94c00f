"""Seeded top-k samplers and classifier-free guidance blending."""

from typing import Optional

import torch

from .config import SamplingConfig


def cfg_blend(
    logits_positive: torch.Tensor, logits_negative: torch.Tensor, alpha: float
) -> torch.Tensor:
    """Blend conditioned and anti-conditioned logits.

    logits = negative + alpha * (positive - negative)

    alpha = 1.0 reduces to the positive branch, > 1.0 pushes further away from
    the negative anchor.
    """
    return logits_negative + alpha * (logits_positive - logits_negative)


def guided_logits(logits: torch.Tensor, cfg_alpha: Optional[float]) -> torch.Tensor:
    """Collapse a (possibly batch-doubled) logits tensor to a single row.

    Args:
        logits: [1, vocab] without CFG, [2, vocab] (positive, negative) with CFG
        cfg_alpha: Guidance weight, None when CFG is off

    Returns:
        Logits [vocab]
    """
    if cfg_alpha is None:
        return logits[0]
    if logits.shape[0] != 2:
        raise ValueError(f"CFG expects a batch of 2 (positive, negative), got {logits.shape[0]}")
    return cfg_blend(logits[0], logits[1], cfg_alpha)


class TopKSampler:
    """Temperature + top-k sampler with its own seeded generator.

    The generator lives on CPU so the same seed reproduces the same tokens
    regardless of the device the logits were computed on.

    Args:
        seed: Generator seed
        top_k: Number of highest-probability candidates kept
        temperature: Softmax temperature; <= 0 means greedy (argmax)
    """

    def __init__(self, seed: int, top_k: int, temperature: float = 0.8):
        self.seed = seed
        self.top_k = top_k
        self.temperature = temperature
        self.generator = torch.Generator(device="cpu")
        self.generator.manual_seed(seed)

    @classmethod
    def from_config(cls, seed: int, config: SamplingConfig) -> "TopKSampler":
        return cls(seed=seed, top_k=config.top_k, temperature=config.temperature)

    def reset(self) -> None:
        """Re-seed so the next run draws the same sequence."""
        self.generator.manual_seed(self.seed)

    def sample(self, logits: torch.Tensor) -> int:
        """Sample one token id from logits [vocab]."""
        logits = logits.detach().float().cpu().reshape(-1)

        if self.temperature <= 0:
            return int(logits.argmax().item())

        probs = torch.softmax(logits / self.temperature, dim=-1)
        top_k_probs, top_k_indices = torch.topk(probs, min(self.top_k, probs.shape[-1]))

        # Renormalize
        top_k_probs = top_k_probs / top_k_probs.sum()

        sampled_idx = torch.multinomial(top_k_probs, 1, generator=self.generator)
        return int(top_k_indices[sampled_idx[0]].item())
