"""Tests for the reference multistream model and Depformer."""

import pytest
import torch

from stream_s2st.errors import ModelError
from stream_s2st.modules import Depformer, MultistreamConfig, MultistreamLM


def first_token(logits):
    return int(logits[0].argmax())


@pytest.fixture
def depformer():
    torch.manual_seed(0)
    return Depformer(
        num_codebooks=3,
        vocab_size=32,
        text_vocab_size=64,
        main_dim=32,
        hidden_size=32,
        num_layers=1,
        num_heads=2,
        intermediate_size=64,
    ).eval()


class TestMultistreamConfig:
    """Tests for MultistreamConfig."""

    def test_text_vocab_includes_start(self, tiny_model_config):
        assert tiny_model_config.text_in_vocab_size == 65
        assert tiny_model_config.text_start_token == 64

    def test_stream_config(self, tiny_model_config):
        stream_cfg = tiny_model_config.stream_config()

        assert stream_cfg.generated_audio_codebooks == 2
        assert stream_cfg.input_audio_codebooks == 2
        assert stream_cfg.audio_pad_token == 32
        assert stream_cfg.delays() == [0, 2, 0, 2]

    def test_save_and_load(self, tmp_path, tiny_model_config):
        tiny_model_config.save_pretrained(tmp_path)
        loaded = MultistreamConfig.from_pretrained(tmp_path)

        assert loaded.generated_audio_codebooks == 2
        assert loaded.conditioners == tiny_model_config.conditioners

    def test_auto_config_registered(self, tmp_path, tiny_model_config):
        from transformers import AutoConfig

        tiny_model_config.save_pretrained(tmp_path)
        assert isinstance(AutoConfig.from_pretrained(tmp_path), MultistreamConfig)


class TestForwardStep:
    """Tests for the temporal transformer step."""

    def test_shapes(self, tiny_model):
        text = torch.tensor([[64]])
        audio = torch.full((1, 4, 1), 32)
        logits, hidden = tiny_model.forward_step(text, audio)

        assert logits.shape == (1, 64)
        assert hidden.shape == (1, 1, 32)

    def test_cache_grows_and_resets(self, tiny_model):
        text = torch.tensor([[64]])
        audio = torch.full((1, 4, 1), 32)
        tiny_model.reset_streaming()
        for _ in range(3):
            tiny_model.forward_step(text, audio)
        assert tiny_model._cache.get_seq_length() == 3

        tiny_model.reset_streaming()
        assert tiny_model._cache is None

    def test_reset_reproduces_logits(self, tiny_model):
        text = torch.tensor([[64]])
        audio = torch.full((1, 4, 1), 32)
        tiny_model.reset_streaming()
        first, _ = tiny_model.forward_step(text, audio)
        tiny_model.reset_streaming()
        second, _ = tiny_model.forward_step(text, audio)

        torch.testing.assert_close(first, second)

    def test_condition_changes_logits(self, tiny_model):
        text = torch.tensor([[64]])
        audio = torch.full((1, 4, 1), 32)
        conditioner = tiny_model.condition_provider

        tiny_model.reset_streaming()
        good, _ = tiny_model.forward_step(text, audio, conditioner.condition_lut("description", "very_good"))
        tiny_model.reset_streaming()
        bad, _ = tiny_model.forward_step(text, audio, conditioner.condition_lut("description", "very_bad"))

        assert not torch.allclose(good, bad)

    def test_batch_of_two(self, tiny_model):
        tiny_model.reset_streaming()
        logits, hidden = tiny_model.forward_step(
            torch.full((2, 1), 64), torch.full((2, 4, 1), 32), torch.zeros(2, 1, 32)
        )
        assert logits.shape == (2, 64)

    def test_wrong_codebook_count(self, tiny_model):
        tiny_model.reset_streaming()
        with pytest.raises(ModelError, match="audio tokens"):
            tiny_model.forward_step(torch.tensor([[64]]), torch.full((1, 3, 1), 32))

    def test_condition_batch_mismatch(self, tiny_model):
        tiny_model.reset_streaming()
        with pytest.raises(ModelError, match="Condition batch"):
            tiny_model.forward_step(
                torch.tensor([[64]]), torch.full((1, 4, 1), 32), torch.zeros(2, 1, 32)
            )

    def test_max_positions(self, tiny_model_config):
        tiny_model_config.max_position_embeddings = 2
        model = MultistreamLM(tiny_model_config).eval()
        text = torch.tensor([[64]])
        audio = torch.full((1, 4, 1), 32)
        model.forward_step(text, audio)
        model.forward_step(text, audio)
        with pytest.raises(ModelError, match="max_position_embeddings"):
            model.forward_step(text, audio)

    def test_no_conditioner(self, tiny_model_config):
        tiny_model_config.conditioners = {}
        assert MultistreamLM(tiny_model_config).condition_provider is None


class TestDepformer:
    """Tests for Depformer.generate_step."""

    def test_samples_every_codebook(self, depformer):
        logits_seen = []

        def sample_fn(logits):
            logits_seen.append(logits.shape)
            return first_token(logits)

        tokens = depformer.generate_step(torch.randn(1, 1, 32), torch.tensor([[5]]), sample_fn)

        assert tokens.shape == (1, 3)
        assert logits_seen == [(1, 32)] * 3

    def test_sampled_token_feeds_next_codebook(self, depformer):
        """Test that codebook k + 1 depends on the token chosen for codebook k."""
        hidden = torch.randn(1, 1, 32)
        text = torch.tensor([[5]])
        seen_a, seen_b = [], []

        def pick(value, seen):
            def sample_fn(logits):
                seen.append(logits.clone())
                return value

            return sample_fn

        depformer.generate_step(hidden, text, pick(1, seen_a))
        depformer.generate_step(hidden, text, pick(2, seen_b))

        torch.testing.assert_close(seen_a[0], seen_b[0])
        assert not torch.allclose(seen_a[1], seen_b[1])

    def test_batch_rows_share_tokens(self, depformer):
        tokens = depformer.generate_step(
            torch.randn(2, 1, 32), torch.tensor([[5], [5]]), first_token
        )
        assert tokens.shape == (2, 3)
        assert tokens[0].tolist() == tokens[1].tolist()

    def test_model_depformer_step(self, tiny_model):
        tiny_model.reset_streaming()
        _, hidden = tiny_model.forward_step(torch.tensor([[64]]), torch.full((1, 4, 1), 32))
        tokens = tiny_model.depformer_step(hidden, torch.tensor([[5]]), first_token)

        assert tokens.shape == (1, 2)
        assert all(0 <= t < 32 for t in tokens[0].tolist())
