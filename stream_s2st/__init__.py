"""Streaming speech translation driver: codec, multistream stepper and detokenizer."""

__version__ = "0.1.0"

from .codec import CodecAdapter, MimiCodec
from .conditioning import ConditioningSelector, LUTConditioner
from .config import GenerationConfig, SamplingConfig, StreamConfig
from .detokenizer import IncrementalTextDetokenizer, load_piece_decoder
from .errors import ConfigError, InputError, IoError, ModelError, StreamError
from .frames import AudioFrameSource
from .observer import CallbackObserver, GenerationObserver, LoggingObserver
from .orchestrator import GenerationResult, Orchestrator
from .stepper import MultistreamStepper

__all__ = [
    "AudioFrameSource",
    "CallbackObserver",
    "CodecAdapter",
    "ConditioningSelector",
    "ConfigError",
    "GenerationConfig",
    "GenerationObserver",
    "GenerationResult",
    "IncrementalTextDetokenizer",
    "InputError",
    "IoError",
    "LUTConditioner",
    "LoggingObserver",
    "MimiCodec",
    "ModelError",
    "MultistreamStepper",
    "Orchestrator",
    "SamplingConfig",
    "StreamConfig",
    "StreamError",
    "load_piece_decoder",
]
