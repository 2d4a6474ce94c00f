"""Incremental text detokenization for streaming display.

Subword pieces can merge into different surface text depending on their
neighbours. The incremental path only looks at a two-token window, so it can
differ from decoding the whole sequence at once wherever three or more pieces
merge. The full decode at the end of the run is the authoritative transcript.
"""

import logging
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

from .errors import ConfigError

logger = logging.getLogger(__name__)


class PieceDecoder(Protocol):
    def decode(self, ids: Sequence[int]) -> str: ...


class HFPieceDecoder:
    """Decodes ids with a transformers tokenizer."""

    def __init__(self, tokenizer):
        self.tokenizer = tokenizer

    def decode(self, ids: Sequence[int]) -> str:
        return self.tokenizer.decode(
            list(ids), skip_special_tokens=False, clean_up_tokenization_spaces=False
        )


class SentencePieceDecoder:
    """Decodes ids with a SentencePiece model."""

    def __init__(self, processor):
        self.processor = processor

    def decode(self, ids: Sequence[int]) -> str:
        return self.processor.decode([int(i) for i in ids])


def load_piece_decoder(path: Union[str, Path]) -> PieceDecoder:
    """Load a text tokenizer: ``*.model`` is SentencePiece, anything else goes to AutoTokenizer."""
    path_str = str(path)
    if path_str.endswith(".model"):
        import sentencepiece

        try:
            processor = sentencepiece.SentencePieceProcessor(model_file=path_str)
        except (OSError, RuntimeError) as e:
            raise ConfigError(f"Could not load the SentencePiece model {path_str}: {e}") from e
        logger.info(f"Loaded SentencePiece tokenizer from {path_str}")
        return SentencePieceDecoder(processor)

    from transformers import AutoTokenizer

    try:
        tokenizer = AutoTokenizer.from_pretrained(path_str)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not load the tokenizer from {path_str}: {e}") from e
    logger.info(f"Loaded tokenizer from {path_str}")
    return HFPieceDecoder(tokenizer)


class IncrementalTextDetokenizer:
    """Turns the sampled text token stream into display fragments.

    Special tokens produce no text but become the left context of the next
    token. The orchestrator pushes every sampled token, so a fragment is
    always rendered against the token sampled just before it.

    Args:
        decoder: Piece decoder (``decode(ids) -> str``)
        start_token: Token marking the start of the stream
        special_tokens: Tokens never rendered (end-of-padding, padding)
    """

    def __init__(
        self,
        decoder: PieceDecoder,
        start_token: int,
        special_tokens: Sequence[int] = (0, 3),
    ):
        self.decoder = decoder
        self.start_token = start_token
        self.special_tokens = frozenset(special_tokens)
        self.prev_token = start_token

    def reset(self) -> None:
        self.prev_token = self.start_token

    def fragment(self, prev_token: int, token: int) -> str:
        """Text contributed by ``token`` given only the token before it."""
        if prev_token == self.start_token:
            return self.decoder.decode([token])
        prev_text = self.decoder.decode([prev_token])
        text = self.decoder.decode([prev_token, token])
        if len(text) > len(prev_text):
            return text[len(prev_text) :]
        return ""

    def push(self, token: int) -> Optional[str]:
        """Feed the next sampled token; returns its fragment, None for special tokens."""
        if token == self.start_token:
            self.reset()
            return None
        if token in self.special_tokens:
            self.prev_token = token
            return None
        text = self.fragment(self.prev_token, token)
        self.prev_token = token
        return text

    def finalize(self, tokens: Sequence[int]) -> str:
        """One-shot decode of the whole token history."""
        return self.decoder.decode(list(tokens))
