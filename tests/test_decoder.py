"""Tests for the decoder state machine."""

import pytest
import torch

from nmt_transformer import ConfigurationError, DecoderState, make_model


def step_through(model, batch, targets):
    """Decode ``targets`` (batch, len) one token at a time; returns stacked logits."""
    state = model.start_state(batch)
    logits = []
    for t in range(targets.size(1)):
        state = model.step(state.with_targets(targets[:, t : t + 1]))
        logits.append(state.logits)
    return torch.cat(logits, dim=2), state


class TestDecoderSteps:

    def test_start_state(self, model, batch):
        state = model.start_state(batch)
        assert isinstance(state, DecoderState)
        assert state.position == 0
        assert state.states == ()
        assert state.logits is None
        assert len(state.encoder_states) == 1

    def test_two_steps_grow_caches(self, model, batch):
        start = model.start_state(batch)
        first = model.step(start.with_targets(torch.tensor([[1], [1]])))
        second = model.step(first.with_targets(torch.tensor([[2], [5]])))

        assert first.position == 1
        assert second.position == 2
        assert [s.output.size(-2) for s in first.states] == [1]
        assert [s.output.size(-2) for s in second.states] == [2]
        assert second.logits.shape == (1, 2, 1, 13)

        # earlier states are left untouched
        assert start.position == 0
        assert first.states[0].output.size(-2) == 1
        assert second is not first

    def test_encoder_states_are_shared(self, model, batch):
        start = model.start_state(batch)
        state = model.step(start.with_targets(torch.tensor([[1], [1]])))
        assert state.encoder_states[0] is start.encoder_states[0]

    @pytest.mark.parametrize("autoreg", ["self-attention", "average-attention"])
    def test_incremental_matches_full_sequence(self, small_options, batch, autoreg):
        model = make_model(small_options, transformer_decoder_autoreg=autoreg, dec_depth=2)
        model.eval()
        targets = batch[1].ids

        full = model.step(model.start_state(batch).with_targets(targets))
        incremental, last = step_through(model, batch, targets)

        assert full.logits.shape == (1, 2, 4, 13)
        assert torch.allclose(full.logits, incremental, atol=1e-4)
        assert last.position == 4

    def test_average_attention_cache_is_running_average(self, small_options, batch):
        model = make_model(small_options, transformer_decoder_autoreg="average-attention")
        model.eval()
        _, state = step_through(model, batch, batch[1].ids)
        assert [s.output.size(-2) for s in state.states] == [1]
        assert state.position == 4

    def test_unknown_autoregressive_layer(self, small_options):
        with pytest.raises(ConfigurationError, match="rnn"):
            make_model(small_options, transformer_decoder_autoreg="rnn")

    def test_state_from_other_model_is_rejected(self, model, small_options, batch):
        other = make_model(small_options)
        state = other.start_state(batch).with_targets(torch.tensor([[1], [1]]))
        with pytest.raises(ConfigurationError, match="inconsistent graph"):
            model.step(state)

    def test_step_needs_targets(self, model, batch):
        with pytest.raises(ValueError, match="target"):
            model.step(model.start_state(batch))

    def test_wrong_number_of_encoder_states(self, model, batch):
        with pytest.raises(ValueError):
            model.decoder.start_state(batch, [])


class TestOutputLayer:

    def test_untied_by_default(self, model):
        assert model.decoder.generator.weight is not model.decoder.embeddings.weight
        assert "decoder_ff_logit_out_W" in model.registry.names()

    def test_tied_output_layer(self, small_options):
        model = make_model(small_options, tied_embeddings=True)
        assert model.decoder.generator.weight is model.decoder.embeddings.weight
        assert model.decoder.generator.transposed
        assert model.encoders[0].embeddings.weight is not model.decoder.embeddings.weight

    def test_tied_all_shares_one_matrix(self, small_options):
        model = make_model(small_options, tied_embeddings_all=True, dim_vocabs=[13, 13])
        shared = model.encoders[0].embeddings.weight
        assert model.decoder.embeddings.weight is shared
        assert model.decoder.generator.weight is shared
        assert "Wemb" in model.registry.names()
        assert "encoder_Wemb" not in model.registry.names()

    def test_tied_model_scores_full_sequence(self, small_options, batch):
        model = make_model(small_options, tied_embeddings_all=True, dim_vocabs=[13, 13])
        model.eval()
        assert model(batch).shape == (1, 2, 3, 13)

    def test_shortlist_restricts_logits(self, model, batch):
        state = model.start_state(batch).with_targets(torch.tensor([[1], [1]]))
        full = model.step(state).logits

        model.decoder.set_shortlist([2, 5, 7])
        short = model.step(state).logits
        model.decoder.set_shortlist(None)

        assert short.shape == (1, 2, 1, 3)
        assert torch.allclose(short, full[..., [2, 5, 7]], atol=1e-6)

    def test_target_padding_mask(self, model, batch):
        state = model.decoder.targets_from_batch(model.start_state(batch))
        assert state.targets.shape == (2, 3)
        assert state.target_mask.shape == (2, 3)
        assert model.step(state).logits.shape == (1, 2, 3, 13)
