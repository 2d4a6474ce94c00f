"""Tests for PCM padding and fixed-size framing."""

import numpy as np
import pytest

from stream_s2st.errors import ConfigError, InputError
from stream_s2st.frames import AudioFrameSource, max_steps_for, pad_pcm


class TestPadPcm:
    """Tests for trailing silence padding."""

    def test_appends_silence(self):
        """Test that the pad is zeros appended after the input."""
        pcm = np.ones(10, dtype=np.float32)
        padded = pad_pcm(pcm, 5)

        assert len(padded) == 15
        np.testing.assert_array_equal(padded[:10], pcm)
        np.testing.assert_array_equal(padded[10:], np.zeros(5))

    def test_zero_pad_is_identity(self):
        pcm = np.arange(4, dtype=np.float32)
        np.testing.assert_array_equal(pad_pcm(pcm, 0), pcm)

    def test_output_is_float32(self):
        assert pad_pcm(np.zeros(3, dtype=np.float64), 2).dtype == np.float32


class TestMaxSteps:
    """Tests for the capped frame count."""

    @pytest.mark.parametrize(
        "num_samples,expected",
        [(0, 0), (1919, 0), (1920, 1), (3839, 1), (132000, 68)],
    )
    def test_whole_frames_only(self, num_samples, expected):
        assert max_steps_for(num_samples, 1920, 2500) == expected

    def test_capped(self):
        assert max_steps_for(1920 * 3000, 1920, 2500) == 2500


class TestAudioFrameSource:
    """Tests for AudioFrameSource."""

    def test_frames_concatenate_to_prefix(self):
        """Test that frames reproduce the first n * frame_size samples exactly."""
        pcm = np.random.default_rng(0).standard_normal(1920 * 3 + 100).astype(np.float32)
        frames = list(AudioFrameSource(pcm, frame_size=1920))

        assert len(frames) == 3
        assert all(len(f) == 1920 for f in frames)
        np.testing.assert_array_equal(np.concatenate(frames), pcm[: 1920 * 3])

    def test_len_matches_iteration(self):
        source = AudioFrameSource(np.zeros(1920 * 5), frame_size=1920, max_frames=3)
        assert len(source) == 3
        assert len(list(source)) == 3

    def test_too_short_yields_nothing(self):
        source = AudioFrameSource(np.zeros(1000), frame_size=1920)
        assert len(source) == 0
        assert list(source) == []

    def test_one_shot(self):
        """Test that an exhausted source stays exhausted."""
        source = AudioFrameSource(np.zeros(1920 * 2), frame_size=1920)
        assert len(list(source)) == 2
        assert list(source) == []

    def test_frames_are_read_only(self):
        frame = next(AudioFrameSource(np.zeros(1920), frame_size=1920))
        with pytest.raises(ValueError):
            frame[0] = 1.0

    def test_source_is_isolated_from_input(self):
        """Test that mutating the input after construction does not change the frames."""
        pcm = np.zeros(1920, dtype=np.float32)
        source = AudioFrameSource(pcm, frame_size=1920)
        pcm[:] = 1.0
        assert next(source).sum() == 0.0

    def test_rejects_multichannel(self):
        with pytest.raises(InputError):
            AudioFrameSource(np.zeros((1920, 2)), frame_size=1920)

    def test_rejects_bad_frame_size(self):
        with pytest.raises(ConfigError):
            AudioFrameSource(np.zeros(1920), frame_size=0)
