"""Reference multistream model: temporal transformer and Depformer."""

from .depformer import Depformer
from .multistream_lm import MultistreamConfig, MultistreamLM

__all__ = ["Depformer", "MultistreamConfig", "MultistreamLM"]
