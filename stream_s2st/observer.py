"""Observers for run progress, streamed text and throughput.

The orchestrator reports through an injected observer instead of writing to
process-wide logging or stdout itself. Observer failures are logged and never
abort a run.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class ThroughputReport:
    """Timing summary of a finished run."""

    num_frames: int
    num_steps: int
    elapsed: float

    @property
    def ms_per_step(self) -> float:
        return self.elapsed * 1000.0 / max(self.num_steps, 1)

    def __str__(self) -> str:
        return (
            f"generated {self.num_steps} steps ({self.num_frames} frames) in "
            f"{self.elapsed:.2f}s, {self.ms_per_step:.0f}ms/token"
        )


class GenerationObserver:
    """No-op base observer. Override the hooks you need."""

    def on_start(self, num_frames: int) -> None:
        pass

    def on_frame(self, frame_idx: int, num_steps: int) -> None:
        pass

    def on_text(self, fragment: str) -> None:
        pass

    def on_audio(self, pcm: np.ndarray) -> None:
        pass

    def on_finish(self, report: ThroughputReport, text: str) -> None:
        pass


class LoggingObserver(GenerationObserver):
    """Reports progress through the module logger."""

    def __init__(self, log: Optional[logging.Logger] = None, frame_log_interval: int = 100):
        self.log = log or logger
        self.frame_log_interval = frame_log_interval

    def on_start(self, num_frames: int) -> None:
        self.log.info(f"Starting the inference loop ({num_frames} frames)")

    def on_frame(self, frame_idx: int, num_steps: int) -> None:
        if self.frame_log_interval and frame_idx % self.frame_log_interval == 0:
            self.log.debug(f"frame {frame_idx}: {num_steps} steps")

    def on_finish(self, report: ThroughputReport, text: str) -> None:
        self.log.info(str(report))
        self.log.info(f"Generated text: {text}")


class CallbackObserver(GenerationObserver):
    """Forwards text and audio to plain callbacks.

    Args:
        on_text: Called with each streamed text fragment
        on_audio: Called with each decoded PCM chunk
        inner: Observer that also receives every event (e.g. LoggingObserver)
    """

    def __init__(
        self,
        on_text: Optional[Callable[[str], None]] = None,
        on_audio: Optional[Callable[[np.ndarray], None]] = None,
        inner: Optional[GenerationObserver] = None,
    ):
        self._on_text = on_text
        self._on_audio = on_audio
        self.inner = inner or GenerationObserver()

    def on_start(self, num_frames: int) -> None:
        self.inner.on_start(num_frames)

    def on_frame(self, frame_idx: int, num_steps: int) -> None:
        self.inner.on_frame(frame_idx, num_steps)

    def on_text(self, fragment: str) -> None:
        if self._on_text:
            self._on_text(fragment)
        self.inner.on_text(fragment)

    def on_audio(self, pcm: np.ndarray) -> None:
        if self._on_audio:
            self._on_audio(pcm)
        self.inner.on_audio(pcm)

    def on_finish(self, report: ThroughputReport, text: str) -> None:
        self.inner.on_finish(report, text)


def notify(observer: GenerationObserver, event: str, *args) -> None:
    """Call an observer hook, logging (not raising) callback errors."""
    try:
        getattr(observer, event)(*args)
    except Exception as e:
        logger.error(f"{event} callback error: {e}")
