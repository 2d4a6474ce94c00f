"""Depformer module for predicting generated audio codebooks.

Based on Moshi's Depformer architecture:
- Small transformer that runs along the codebook axis for a single time step
- Codebook 0 is conditioned on the sampled text token, codebook k on codebook k-1
- Shared transformer with per-codebook input/output projections
- Sampling is delegated to the caller so guidance can be applied per codebook
"""

import logging
from typing import Callable

import torch
import torch.nn as nn
from transformers import LlamaConfig
from transformers.cache_utils import DynamicCache
from transformers.models.llama.modeling_llama import (
    LlamaDecoderLayer,
    LlamaRMSNorm,
    LlamaRotaryEmbedding,
)

logger = logging.getLogger(__name__)

# Takes logits [batch, vocab] for one codebook, returns the chosen token id
SampleFn = Callable[[torch.Tensor], int]


class Depformer(nn.Module):
    """Depformer for the generated audio codebooks of one time step.

    Args:
        num_codebooks: Number of codebooks to predict
        vocab_size: Codec vocabulary size (default: 2048 for Mimi)
        text_vocab_size: Text vocabulary size (embeds the token fed to codebook 0)
        main_dim: Dimension of the temporal transformer (input projection source)
        hidden_size: Depformer hidden dimension
        num_layers: Number of transformer layers
        num_heads: Number of attention heads
        intermediate_size: FFN intermediate dimension
    """

    def __init__(
        self,
        num_codebooks: int = 8,
        vocab_size: int = 2048,
        text_vocab_size: int = 32000,
        main_dim: int = 1024,
        hidden_size: int = 512,
        num_layers: int = 4,
        num_heads: int = 8,
        intermediate_size: int = 2048,
    ):
        super().__init__()
        self.num_codebooks = num_codebooks
        self.vocab_size = vocab_size
        self.main_dim = main_dim
        self.hidden_size = hidden_size

        config = LlamaConfig(
            vocab_size=vocab_size,
            hidden_size=hidden_size,
            intermediate_size=intermediate_size,
            num_hidden_layers=num_layers,
            num_attention_heads=num_heads,
            num_key_value_heads=num_heads,
            max_position_embeddings=max(64, num_codebooks),  # Small context for depformer
            _attn_implementation="eager",  # Use eager for small sequences
        )

        # Per-codebook input projections from the temporal transformer (Moshi-style multi-linear)
        self.input_projs = nn.ModuleList(
            [nn.Linear(main_dim, hidden_size, bias=False) for _ in range(num_codebooks)]
        )

        # Codebook 0 embeds the text token, codebook k embeds codebook k-1's token
        self.text_emb = nn.Embedding(text_vocab_size, hidden_size)
        self.codebook_emb = nn.ModuleList(
            [nn.Embedding(vocab_size, hidden_size) for _ in range(num_codebooks - 1)]
        )

        # Shared transformer layers
        self.layers = nn.ModuleList(
            [LlamaDecoderLayer(config, layer_idx=i) for i in range(num_layers)]
        )
        self.rotary_emb = LlamaRotaryEmbedding(config=config)

        # Per-codebook output normalization and projection
        self.output_norms = nn.ModuleList(
            [LlamaRMSNorm(hidden_size, eps=config.rms_norm_eps) for _ in range(num_codebooks)]
        )
        self.output_projs = nn.ModuleList(
            [nn.Linear(hidden_size, vocab_size, bias=False) for _ in range(num_codebooks)]
        )

    @torch.no_grad()
    def generate_step(
        self,
        main_hidden: torch.Tensor,
        text_tokens: torch.Tensor,
        sample_fn: SampleFn,
    ) -> torch.Tensor:
        """Sample all codebooks for one time step, sequentially with a KV cache.

        Args:
            main_hidden: Temporal transformer output [batch, 1, main_dim]
            text_tokens: Text token sampled for this step [batch, 1]
            sample_fn: Picks a token from logits [batch, vocab]; the same token is
                fed back to every batch row (batch > 1 only under guidance)

        Returns:
            Sampled tokens [batch, num_codebooks]
        """
        batch_size = main_hidden.shape[0]
        device = main_hidden.device

        past_key_values = DynamicCache()
        prev_emb = self.text_emb(text_tokens)  # [B, 1, hidden]
        generated = []

        for cb_idx in range(self.num_codebooks):
            cb_input = self.input_projs[cb_idx](main_hidden) + prev_emb  # [B, 1, hidden]

            # Position ID is the codebook index
            position_ids = torch.full((batch_size, 1), cb_idx, dtype=torch.long, device=device)
            position_embeddings = self.rotary_emb(cb_input, position_ids)

            hidden_states = cb_input
            for layer in self.layers:
                layer_outputs = layer(
                    hidden_states,
                    attention_mask=None,
                    position_ids=position_ids,
                    past_key_values=past_key_values,
                    use_cache=True,
                    cache_position=torch.tensor([cb_idx], device=device),
                    position_embeddings=position_embeddings,
                )
                # Handle both tensor (transformers 5.0+) and tuple (older) outputs
                hidden_states = (
                    layer_outputs[0] if isinstance(layer_outputs, tuple) else layer_outputs
                )

            cb_hidden = self.output_norms[cb_idx](hidden_states[:, -1, :])
            logits = self.output_projs[cb_idx](cb_hidden)  # [B, vocab]

            token = sample_fn(logits)
            generated.append(token)

            if cb_idx + 1 < self.num_codebooks:
                token_ids = torch.full((batch_size, 1), token, dtype=torch.long, device=device)
                prev_emb = self.codebook_emb[cb_idx](token_ids)

        return torch.tensor(generated, dtype=torch.long, device=device).unsqueeze(0).expand(
            batch_size, -1
        )
