"""End-to-end streaming generation loop.

Usage:
    orchestrator = Orchestrator.from_pretrained("path/to/model", "path/to/tokenizer.model")
    result = orchestrator.run_file("input.wav", "output.wav")
    print(result.text)

Per frame: encode with the codec; for each sub-step of the returned codes,
step the generator, stream the text fragment, and decode the generator's
delayed audio tokens. Everything runs sequentially: every sub-step depends on
the text token sampled at the previous one, and both codec and generator are
stateful across calls.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

import numpy as np
import torch

from .audio_io import load_audio, write_wav
from .codec import CodecAdapter, MimiCodec
from .conditioning import ConditioningSelector
from .config import STEP_MARGIN, GenerationConfig, StreamConfig
from .detokenizer import IncrementalTextDetokenizer, PieceDecoder
from .errors import ConfigError, ModelError
from .frames import AudioFrameSource, pad_pcm
from .observer import GenerationObserver, LoggingObserver, ThroughputReport, notify
from .sampling import TopKSampler
from .stepper import MultistreamStepper

logger = logging.getLogger(__name__)


class Stepper(Protocol):
    config: StreamConfig

    def reset(self) -> None: ...

    def step(
        self,
        prev_text_token: int,
        input_audio_codes: Sequence[int],
        conditions: Optional[torch.Tensor] = None,
    ) -> int: ...

    def last_completed_audio_tokens(self) -> Optional[list[int]]: ...


@dataclass
class GenerationState:
    """Mutable state of one run, owned by the orchestrator."""

    max_steps: int
    prev_text_token: int
    cfg_alpha: Optional[float] = None
    num_frames: int = 0
    num_steps: int = 0
    pcm_chunks: list = field(default_factory=list)
    text_tokens: list[int] = field(default_factory=list)
    fragments: list[str] = field(default_factory=list)
    start_time: float = field(default_factory=time.perf_counter)


@dataclass
class GenerationResult:
    """Final outputs of a run."""

    pcm: np.ndarray  # [samples] at sample_rate
    text: str  # one-shot decode of text_tokens
    text_tokens: list[int]
    streamed_text: str  # concatenated incremental fragments
    num_frames: int
    num_steps: int
    elapsed: float
    sample_rate: int

    @property
    def duration(self) -> float:
        return len(self.pcm) / self.sample_rate


class Orchestrator:
    """Drives codec, stepper and detokenizer over one input stream.

    Args:
        codec: Streaming codec adapter
        stepper: Multistream stepper (reset at the start of each run)
        detokenizer: Incremental detokenizer for streamed text
        selector: Builds the condition tensor, None for an unconditioned model
        observer: Receives progress, text fragments, audio chunks and timing
        config: Run configuration
    """

    def __init__(
        self,
        codec: CodecAdapter,
        stepper: Stepper,
        detokenizer: IncrementalTextDetokenizer,
        selector: Optional[ConditioningSelector] = None,
        observer: Optional[GenerationObserver] = None,
        config: Optional[GenerationConfig] = None,
    ):
        self.codec = codec
        self.stepper = stepper
        self.detokenizer = detokenizer
        self.selector = selector
        self.observer = observer or LoggingObserver()
        self.config = config or GenerationConfig()

    @property
    def stream_config(self) -> StreamConfig:
        return self.stepper.config

    def run(self, pcm: np.ndarray) -> GenerationResult:
        """Generate text and audio for mono PCM at the codec sample rate.

        The configured silence pad is appended before framing.
        """
        cfg = self.config
        stream_cfg = self.stream_config

        padded = pad_pcm(pcm, cfg.pad_samples)
        frames = AudioFrameSource(padded, frame_size=cfg.frame_size, max_frames=cfg.max_frames)

        cfg_alpha = cfg.effective_cfg_alpha
        conditions = self.selector.select(cfg_alpha) if self.selector is not None else None

        self.codec.reset()
        self.stepper.reset()
        self.detokenizer.reset()

        state = GenerationState(
            max_steps=len(frames) + STEP_MARGIN,
            prev_text_token=stream_cfg.text_start_token,
            cfg_alpha=cfg_alpha,
        )
        notify(self.observer, "on_start", len(frames))

        for frame in frames:
            state.num_frames += 1
            codes = self.codec.encode_step(frame)
            if codes is not None:
                self._run_code_frame(state, codes, conditions)
            notify(self.observer, "on_frame", state.num_frames, state.num_steps)

        return self._finalize(state)

    def _run_code_frame(
        self, state: GenerationState, codes: torch.Tensor, conditions: Optional[torch.Tensor]
    ) -> None:
        stream_cfg = self.stream_config
        if codes.dim() != 2:
            raise ModelError(f"Expected codes [codebooks, steps], got {tuple(codes.shape)}")
        # The codec may return more quantizers than the model reads
        if codes.shape[0] < stream_cfg.input_audio_codebooks:
            raise ModelError(
                f"Codec returned {codes.shape[0]} codebooks, model needs "
                f"{stream_cfg.input_audio_codebooks}"
            )

        for sub_step in range(codes.shape[1]):
            if state.num_steps >= state.max_steps:
                raise ModelError(
                    f"Exceeded max_steps={state.max_steps} for {state.num_frames} frames"
                )
            input_codes = codes[: stream_cfg.input_audio_codebooks, sub_step].tolist()
            text_token = self.stepper.step(state.prev_text_token, input_codes, conditions)
            state.num_steps += 1

            if not stream_cfg.is_special_text_token(text_token):
                state.text_tokens.append(text_token)
            # Specials still become the left context of the next fragment
            fragment = self.detokenizer.push(text_token)
            if fragment:
                state.fragments.append(fragment)
                notify(self.observer, "on_text", fragment)
            state.prev_text_token = text_token

            audio_tokens = self.stepper.last_completed_audio_tokens()
            if audio_tokens is not None:
                pcm = self.codec.decode_step(audio_tokens)
                if pcm is not None:
                    state.pcm_chunks.append(pcm)
                    notify(self.observer, "on_audio", pcm)

    def _finalize(self, state: GenerationState) -> GenerationResult:
        elapsed = time.perf_counter() - state.start_time
        if state.pcm_chunks:
            pcm = np.concatenate(state.pcm_chunks).astype(np.float32)
        else:
            pcm = np.zeros(0, dtype=np.float32)
        text = self.detokenizer.finalize(state.text_tokens)

        report = ThroughputReport(
            num_frames=state.num_frames, num_steps=state.num_steps, elapsed=elapsed
        )
        notify(self.observer, "on_finish", report, text)

        return GenerationResult(
            pcm=pcm,
            text=text,
            text_tokens=list(state.text_tokens),
            streamed_text="".join(state.fragments),
            num_frames=state.num_frames,
            num_steps=state.num_steps,
            elapsed=elapsed,
            sample_rate=self.config.sample_rate,
        )

    def run_file(
        self, input_path: Union[str, Path], output_path: Union[str, Path]
    ) -> GenerationResult:
        """Load an audio file, run generation, and write the generated audio as WAV."""
        logger.info(f"Loading the audio input from {input_path}")
        pcm = load_audio(input_path, target_sr=self.config.sample_rate)
        logger.info(f"Loaded {len(pcm)} samples")

        result = self.run(pcm)
        write_wav(output_path, result.pcm, self.config.sample_rate)
        return result

    @classmethod
    def build(
        cls,
        model,
        codec: CodecAdapter,
        piece_decoder: PieceDecoder,
        config: Optional[GenerationConfig] = None,
        observer: Optional[GenerationObserver] = None,
        device: Optional[torch.device] = None,
    ) -> "Orchestrator":
        """Wire a loaded MultistreamLM, codec and tokenizer into an orchestrator."""
        config = config or GenerationConfig()
        stream_cfg = model.config.stream_config()

        codec_codebooks = getattr(codec, "num_codebooks", None)
        if codec_codebooks is not None and codec_codebooks < stream_cfg.generated_audio_codebooks:
            raise ConfigError(
                f"Codec decodes {codec_codebooks} codebooks but the model generates "
                f"{stream_cfg.generated_audio_codebooks}"
            )
        if codec.frame_size != config.frame_size:
            raise ConfigError(
                f"Codec frame size {codec.frame_size} does not match frame_size={config.frame_size}"
            )

        stepper = MultistreamStepper(
            backbone=model,
            config=stream_cfg,
            text_sampler=TopKSampler.from_config(config.seed, config.text_sampling),
            audio_sampler=TopKSampler.from_config(config.seed, config.audio_sampling),
            cfg_alpha=config.effective_cfg_alpha,
            max_steps=config.max_frames + STEP_MARGIN,
            device=device,
        )
        selector = ConditioningSelector(
            model.condition_provider,
            category=config.condition_category,
            positive=config.positive_condition,
            negative=config.negative_condition,
        )
        detokenizer = IncrementalTextDetokenizer(
            piece_decoder,
            start_token=stream_cfg.text_start_token,
            special_tokens=(stream_cfg.text_eop_token, stream_cfg.text_pad_token),
        )
        return cls(
            codec=codec,
            stepper=stepper,
            detokenizer=detokenizer,
            selector=selector,
            observer=observer,
            config=config,
        )

    @classmethod
    def from_pretrained(
        cls,
        model_path: str,
        tokenizer_path: str,
        mimi_repo: str = "kyutai/mimi",
        config: Optional[GenerationConfig] = None,
        observer: Optional[GenerationObserver] = None,
        device: Optional[Union[str, torch.device]] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> "Orchestrator":
        """Load model, Mimi codec and tokenizer and wire them together."""
        from .detokenizer import load_piece_decoder
        from .modules import MultistreamLM

        device = torch.device(device) if device is not None else torch.device("cpu")

        logger.info(f"Loading the multistream model from {model_path}")
        try:
            model = MultistreamLM.from_pretrained(model_path)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Could not load the multistream model from {model_path}: {e}") from e
        model = model.to(device=device, dtype=dtype) if dtype is not None else model.to(device)
        model.eval()
        stream_cfg = model.config.stream_config()

        logger.info("Loading the audio tokenizer")
        try:
            codec = MimiCodec.from_pretrained(
                mimi_repo,
                num_codebooks=max(stream_cfg.input_audio_codebooks, stream_cfg.generated_audio_codebooks),
                device=device,
            )
        except (OSError, ValueError) as e:
            raise ConfigError(f"Could not load the Mimi codec from {mimi_repo}: {e}") from e

        logger.info("Loading the text tokenizer")
        piece_decoder = load_piece_decoder(tokenizer_path)
        logger.info("Done loading models")

        return cls.build(model, codec, piece_decoder, config=config, observer=observer, device=device)
