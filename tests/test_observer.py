"""Tests for run observers."""

import logging
from unittest.mock import MagicMock

import numpy as np
import pytest

from stream_s2st.observer import (
    CallbackObserver,
    GenerationObserver,
    LoggingObserver,
    ThroughputReport,
    notify,
)


class TestThroughputReport:
    def test_format(self):
        report = ThroughputReport(num_frames=40, num_steps=40, elapsed=2.0)

        assert report.ms_per_step == 50.0
        assert str(report) == "generated 40 steps (40 frames) in 2.00s, 50ms/token"

    def test_zero_steps(self):
        assert ThroughputReport(num_frames=0, num_steps=0, elapsed=0.1).ms_per_step == pytest.approx(100.0)


class TestNotify:
    """Tests for error-tolerant observer dispatch."""

    def test_forwards_arguments(self):
        observer = MagicMock(spec=GenerationObserver)
        notify(observer, "on_text", "hello")
        observer.on_text.assert_called_once_with("hello")

    def test_callback_error_is_logged(self, caplog):
        observer = MagicMock(spec=GenerationObserver)
        observer.on_text.side_effect = ValueError("boom")

        with caplog.at_level(logging.ERROR):
            notify(observer, "on_text", "hello")

        assert "on_text callback error: boom" in caplog.text


class TestCallbackObserver:
    """Tests for CallbackObserver."""

    def test_forwards_to_callbacks_and_inner(self):
        on_text = MagicMock()
        on_audio = MagicMock()
        inner = MagicMock(spec=GenerationObserver)
        observer = CallbackObserver(on_text=on_text, on_audio=on_audio, inner=inner)
        pcm = np.zeros(4, dtype=np.float32)

        observer.on_text("hi")
        observer.on_audio(pcm)
        observer.on_start(3)

        on_text.assert_called_once_with("hi")
        on_audio.assert_called_once_with(pcm)
        inner.on_text.assert_called_once_with("hi")
        inner.on_start.assert_called_once_with(3)

    def test_without_callbacks(self):
        observer = CallbackObserver()
        observer.on_text("hi")
        observer.on_audio(np.zeros(1))


class TestLoggingObserver:
    def test_logs_summary(self, caplog):
        observer = LoggingObserver()
        with caplog.at_level(logging.INFO, logger="stream_s2st.observer"):
            observer.on_start(10)
            observer.on_finish(ThroughputReport(10, 10, 1.0), "bonjour")

        assert "Starting the inference loop (10 frames)" in caplog.text
        assert "generated 10 steps" in caplog.text
        assert "Generated text: bonjour" in caplog.text
