"""Pytest configuration and fixtures."""

import os

# Disable tokenizers parallelism to avoid fork warnings in tests
os.environ["TOKENIZERS_PARALLELISM"] = "false"

from typing import Callable, Optional, Sequence

import numpy as np
import pytest
import torch

from stream_s2st.codec import CodecAdapter
from stream_s2st.config import StreamConfig

FRAME_SIZE = 1920
DESCRIPTIONS = ["very_bad", "bad", "neutral", "good", "very_good"]


class FakeCodec(CodecAdapter):
    """Deterministic codec: fixed sub-steps per frame, decodes to a constant chunk.

    Args:
        num_codebooks: Rows returned by encode_step
        vocab_size: Codes are drawn from [0, vocab_size)
        buffer_frames: Number of leading frames that return None
        steps_per_frame: Columns (code sub-steps) returned per frame
    """

    def __init__(
        self,
        num_codebooks: int = 4,
        vocab_size: int = 32,
        buffer_frames: int = 0,
        steps_per_frame: int = 1,
    ):
        self.num_codebooks = num_codebooks
        self.vocab_size = vocab_size
        self.buffer_frames = buffer_frames
        self.steps_per_frame = steps_per_frame
        self.frame_size = FRAME_SIZE
        self.reset()

    def reset(self) -> None:
        self.encoded = 0
        self.decoded: list[list[int]] = []

    def encode_step(self, frame: np.ndarray) -> Optional[torch.Tensor]:
        assert len(frame) == self.frame_size
        self.encoded += 1
        if self.encoded <= self.buffer_frames:
            return None
        level = int(np.abs(frame).sum() * 100)
        codes = [
            [
                (self.encoded * self.steps_per_frame + j + level + k) % self.vocab_size
                for j in range(self.steps_per_frame)
            ]
            for k in range(self.num_codebooks)
        ]
        return torch.tensor(codes, dtype=torch.long)

    def decode_step(self, audio_tokens: Sequence[int]) -> Optional[np.ndarray]:
        self.decoded.append(list(audio_tokens))
        return np.full(self.frame_size, audio_tokens[0] / 1000.0, dtype=np.float32)


class FakePieceDecoder:
    """Piece table decoder with SentencePiece-style word boundaries.

    ``merges`` maps a concatenated surface form to what it renders as, to
    mimic pieces that only merge when three or more are decoded together.
    """

    def __init__(self, pieces: dict[int, str], merges: Optional[dict[str, str]] = None):
        self.pieces = pieces
        self.merges = merges or {}

    def decode(self, ids: Sequence[int]) -> str:
        text = "".join(self.pieces.get(int(i), f"<{int(i)}>") for i in ids)
        for surface, merged in self.merges.items():
            text = text.replace(surface, merged)
        return text.replace("▁", " ").lstrip()


class FakeBackbone:
    """Scripted backbone: the sampled tokens are fixed functions of the step.

    Logits put all their mass on one id so any sampler returns it.

    Args:
        text_vocab: Text logits width
        audio_vocab: Audio logits width
        num_generated: Generated codebooks per step
        text_fn: step -> text token
        audio_fn: (step, codebook) -> audio token
    """

    def __init__(
        self,
        text_vocab: int = 16,
        audio_vocab: int = 33,
        num_generated: int = 2,
        text_fn: Optional[Callable[[int], int]] = None,
        audio_fn: Optional[Callable[[int, int], int]] = None,
    ):
        self.text_vocab = text_vocab
        self.audio_vocab = audio_vocab
        self.num_generated = num_generated
        self.text_fn = text_fn or (lambda step: 5 + step % 7)
        self.audio_fn = audio_fn or (lambda step, k: (step * 3 + k) % (audio_vocab - 1))
        self.resets = 0
        self.calls: list[dict] = []
        self.step = 0

    def reset_streaming(self) -> None:
        self.resets += 1
        self.calls = []
        self.step = 0

    def forward_step(self, text_tokens, audio_tokens, condition=None):
        self.calls.append(
            {"text": text_tokens.clone(), "audio": audio_tokens.clone(), "condition": condition}
        )
        batch = text_tokens.shape[0]
        logits = torch.full((batch, self.text_vocab), -100.0)
        logits[:, self.text_fn(self.step)] = 100.0
        self.step += 1
        return logits, torch.zeros(batch, 1, 4)

    def depformer_step(self, hidden, text_tokens, sample_fn):
        batch = hidden.shape[0]
        step = self.step - 1
        tokens = []
        for k in range(self.num_generated):
            logits = torch.full((batch, self.audio_vocab), -100.0)
            logits[:, self.audio_fn(step, k)] = 100.0
            tokens.append(sample_fn(logits))
        return torch.tensor(tokens, dtype=torch.long).unsqueeze(0).expand(batch, -1)


@pytest.fixture
def stream_config():
    """2 generated + 2 input codebooks, delay 2, start token 16."""
    return StreamConfig(
        audio_vocab_size=33,
        generated_audio_codebooks=2,
        input_audio_codebooks=2,
        text_start_token=16,
        acoustic_delay=2,
    )


@pytest.fixture
def fake_backbone():
    return FakeBackbone()


@pytest.fixture
def fake_codec():
    return FakeCodec()


@pytest.fixture
def piece_decoder():
    """Every id renders as a word; specials 0 and 3 render as markers."""
    pieces = {i: f"▁w{i}" for i in range(64)}
    pieces[0] = "<eop>"
    pieces[3] = "<pad>"
    return FakePieceDecoder(pieces)


@pytest.fixture
def tiny_model_config():
    from stream_s2st.modules import MultistreamConfig

    return MultistreamConfig(
        text_out_vocab_size=64,
        audio_vocab_size=33,
        audio_codebooks=4,
        generated_audio_codebooks=2,
        acoustic_delay=2,
        hidden_size=32,
        num_layers=1,
        num_heads=2,
        intermediate_size=64,
        max_position_embeddings=512,
        depformer_dim=32,
        depformer_num_layers=1,
        depformer_num_heads=2,
        depformer_intermediate_size=64,
        conditioners={"description": DESCRIPTIONS},
    )


@pytest.fixture
def tiny_model(tiny_model_config):
    """Randomly initialised MultistreamLM small enough for CPU tests."""
    from stream_s2st.modules import MultistreamLM

    torch.manual_seed(0)
    model = MultistreamLM(tiny_model_config)
    model.eval()
    return model
