"""Joint text/audio multistream language model (Moshi-style).

One temporal step consumes the previous text token plus one token per audio
codebook (generated stream first, then the source stream), produces text
logits, and hands its hidden state to the Depformer which samples the
generated audio codebooks for that step.

Architecture:
- Summed embeddings: text + per-codebook audio + optional condition
- Temporal transformer (causal, LlamaDecoderLayer with a streaming DynamicCache)
- Text head on the final hidden state
- Depformer along the codebook axis
"""

import logging
from typing import Optional

import torch
import torch.nn as nn
import transformers
from transformers import AutoConfig, AutoModel, LlamaConfig, PreTrainedModel
from transformers.cache_utils import DynamicCache
from transformers.models.llama.modeling_llama import (
    LlamaDecoderLayer,
    LlamaRMSNorm,
    LlamaRotaryEmbedding,
)

from ..conditioning import LUTConditioner
from ..config import StreamConfig
from ..errors import ModelError
from .depformer import Depformer, SampleFn

logger = logging.getLogger(__name__)


class MultistreamConfig(transformers.PretrainedConfig):
    """Configuration for the multistream model.

    Token layout:
    - Text: ``text_out_vocab_size`` sampled ids; the extra input id
      ``text_out_vocab_size`` is the start token.
    - Audio: ``audio_vocab_size`` ids per codebook, the last one is the pad
      token fed before real tokens exist. ``audio_codebooks`` counts generated
      plus source codebooks.
    """

    model_type = "multistream_lm"

    def __init__(
        self,
        text_out_vocab_size: int = 48000,
        audio_vocab_size: int = 2049,
        audio_codebooks: int = 16,
        generated_audio_codebooks: int = 8,
        acoustic_delay: int = 2,
        hidden_size: int = 1024,
        num_layers: int = 8,
        num_heads: int = 16,
        intermediate_size: int = 4096,
        max_position_embeddings: int = 4096,
        depformer_dim: int = 512,
        depformer_num_layers: int = 4,
        depformer_num_heads: int = 8,
        depformer_intermediate_size: int = 2048,
        # {"description": ["very_bad", "bad", "neutral", "good", "very_good"]}
        conditioners: Optional[dict] = None,
        **kwargs,
    ):
        self.text_out_vocab_size = text_out_vocab_size
        self.audio_vocab_size = audio_vocab_size
        self.audio_codebooks = audio_codebooks
        self.generated_audio_codebooks = generated_audio_codebooks
        self.acoustic_delay = acoustic_delay
        self.hidden_size = hidden_size
        self.num_layers = num_layers
        self.num_heads = num_heads
        self.intermediate_size = intermediate_size
        self.max_position_embeddings = max_position_embeddings
        self.depformer_dim = depformer_dim
        self.depformer_num_layers = depformer_num_layers
        self.depformer_num_heads = depformer_num_heads
        self.depformer_intermediate_size = depformer_intermediate_size
        self.conditioners = conditioners or {}
        super().__init__(**kwargs)

    @property
    def text_in_vocab_size(self) -> int:
        return self.text_out_vocab_size + 1

    @property
    def text_start_token(self) -> int:
        return self.text_out_vocab_size

    def stream_config(self) -> StreamConfig:
        """Numbers the generation loop needs, validated."""
        return StreamConfig.from_codebooks(
            audio_codebooks=self.audio_codebooks,
            generated_audio_codebooks=self.generated_audio_codebooks,
            audio_vocab_size=self.audio_vocab_size,
            text_start_token=self.text_start_token,
            acoustic_delay=self.acoustic_delay,
        )


class MultistreamLM(PreTrainedModel):
    """Streaming multistream model advanced one step at a time."""

    config_class = MultistreamConfig
    base_model_prefix = "model"
    main_input_name = "text_tokens"

    def __init__(self, config: MultistreamConfig):
        super().__init__(config)
        hidden = config.hidden_size

        llama_config = LlamaConfig(
            hidden_size=hidden,
            intermediate_size=config.intermediate_size,
            num_hidden_layers=config.num_layers,
            num_attention_heads=config.num_heads,
            num_key_value_heads=config.num_heads,  # No GQA
            max_position_embeddings=config.max_position_embeddings,
            _attn_implementation="eager",
        )

        self.text_emb = nn.Embedding(config.text_in_vocab_size, hidden)
        self.audio_emb = nn.ModuleList(
            [nn.Embedding(config.audio_vocab_size, hidden) for _ in range(config.audio_codebooks)]
        )
        self.conditioner = (
            LUTConditioner(hidden, config.conditioners) if config.conditioners else None
        )

        self.layers = nn.ModuleList(
            [LlamaDecoderLayer(llama_config, layer_idx=i) for i in range(config.num_layers)]
        )
        self.norm = LlamaRMSNorm(hidden, eps=llama_config.rms_norm_eps)
        self.rotary_emb = LlamaRotaryEmbedding(config=llama_config)
        self.text_linear = nn.Linear(hidden, config.text_out_vocab_size, bias=False)

        # Depformer predicts real codec ids only (pad is input-only)
        self.depformer = Depformer(
            num_codebooks=config.generated_audio_codebooks,
            vocab_size=config.audio_vocab_size - 1,
            text_vocab_size=config.text_out_vocab_size,
            main_dim=hidden,
            hidden_size=config.depformer_dim,
            num_layers=config.depformer_num_layers,
            num_heads=config.depformer_num_heads,
            intermediate_size=config.depformer_intermediate_size,
        )

        self._cache: Optional[DynamicCache] = None
        self.post_init()

    def _init_weights(self, module):
        std = 0.02
        if isinstance(module, nn.Linear):
            module.weight.data.normal_(mean=0.0, std=std)
            if module.bias is not None:
                module.bias.data.zero_()
        elif isinstance(module, nn.Embedding):
            module.weight.data.normal_(mean=0.0, std=std)

    @property
    def condition_provider(self) -> Optional[LUTConditioner]:
        return self.conditioner

    @property
    def generated_audio_codebooks(self) -> int:
        return self.config.generated_audio_codebooks

    def reset_streaming(self) -> None:
        """Drop the temporal KV cache so the next step starts a new stream."""
        self._cache = None

    @torch.no_grad()
    def forward_step(
        self,
        text_tokens: torch.Tensor,
        audio_tokens: torch.Tensor,
        condition: Optional[torch.Tensor] = None,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Advance the temporal transformer by one step.

        Args:
            text_tokens: Previous text token [batch, 1]
            audio_tokens: One token per codebook [batch, audio_codebooks, 1]
            condition: Added to the input embedding [batch, 1, hidden]

        Returns:
            Tuple of (text logits [batch, text_out_vocab_size], hidden [batch, 1, hidden])
        """
        if audio_tokens.dim() != 3 or audio_tokens.shape[1] != self.config.audio_codebooks:
            raise ModelError(
                f"Expected audio tokens [batch, {self.config.audio_codebooks}, 1], "
                f"got {tuple(audio_tokens.shape)}"
            )
        if condition is not None and condition.shape[0] != text_tokens.shape[0]:
            raise ModelError(
                f"Condition batch {condition.shape[0]} does not match input batch {text_tokens.shape[0]}"
            )

        if self._cache is None:
            self._cache = DynamicCache()
        pos = self._cache.get_seq_length()
        if pos >= self.config.max_position_embeddings:
            raise ModelError(
                f"Stream exceeded max_position_embeddings={self.config.max_position_embeddings}"
            )

        device = text_tokens.device
        hidden_states = self.text_emb(text_tokens)
        for k, emb in enumerate(self.audio_emb):
            hidden_states = hidden_states + emb(audio_tokens[:, k])
        if condition is not None:
            hidden_states = hidden_states + condition.to(hidden_states.dtype)

        batch_size = hidden_states.shape[0]
        position_ids = torch.full((batch_size, 1), pos, dtype=torch.long, device=device)
        position_embeddings = self.rotary_emb(hidden_states, position_ids)

        for layer in self.layers:
            layer_outputs = layer(
                hidden_states,
                attention_mask=None,
                position_ids=position_ids,
                past_key_values=self._cache,
                use_cache=True,
                cache_position=torch.tensor([pos], device=device),
                position_embeddings=position_embeddings,
            )
            # Handle both tensor (transformers 5.0+) and tuple (older) outputs
            hidden_states = layer_outputs[0] if isinstance(layer_outputs, tuple) else layer_outputs

        hidden_states = self.norm(hidden_states)
        text_logits = self.text_linear(hidden_states[:, -1, :])
        return text_logits, hidden_states

    def depformer_step(
        self, hidden: torch.Tensor, text_tokens: torch.Tensor, sample_fn: SampleFn
    ) -> torch.Tensor:
        """Sample the generated codebooks for the current step [batch, generated_audio_codebooks]."""
        return self.depformer.generate_step(hidden, text_tokens, sample_fn)

    def forward(self, text_tokens, audio_tokens, condition=None):
        return self.forward_step(text_tokens, audio_tokens, condition)


# Register with transformers Auto classes
AutoConfig.register("multistream_lm", MultistreamConfig)
AutoModel.register(MultistreamConfig, MultistreamLM)
