"""Tests for scaled dot-product and multi-head attention."""

import pytest
import torch

from nmt_transformer import (
    ConfigurationError,
    MultiHeadAttention,
    ParamKey,
    join_heads,
    split_heads,
    to_additive_mask,
)

KEY = ParamKey("decoder", 1, "context")


def padding(mask):
    """Additive mask (batch, 1, 1, len) from a (batch, len) padding mask."""
    return to_additive_mask(mask.reshape(1, mask.size(0), 1, mask.size(1)))


class TestHeads:

    def test_split_shape(self):
        x = torch.randn(3, 2, 5, 8)
        assert split_heads(x, 4).shape == (6, 4, 5, 2)

    def test_join_inverts_split(self):
        x = torch.randn(3, 2, 5, 8)
        assert torch.equal(join_heads(split_heads(x, 4), beam=3), x)


class TestMultiHeadAttention:

    @pytest.mark.parametrize("heads", [1, 2, 4, 8])
    @pytest.mark.parametrize("num_sources", [1, 2, 3])
    def test_output_width(self, registry, heads, num_sources):
        mha = MultiHeadAttention(registry, KEY, 8, heads, num_sources=num_sources)
        query = torch.randn(1, 2, 3, 8)
        keys = [torch.randn(1, 2, 4 + i, 8) for i in range(num_sources)]
        masks = [None] * num_sources
        assert mha(query, keys, keys, masks).shape == (1, 2, 3, 8)

    def test_output_width_with_explicit_d_out(self, registry):
        mha = MultiHeadAttention(registry, KEY, 8, 2, d_out=6)
        x = torch.randn(1, 2, 3, 8)
        assert mha(x, [x], [x], [None]).shape == (1, 2, 3, 6)

    def test_weights_are_distributions_over_unmasked_keys(self, registry):
        mha = MultiHeadAttention(registry, KEY, 8, 2)
        mask = torch.tensor([[1.0, 1.0, 1.0, 0.0], [1.0, 0.0, 1.0, 1.0]])
        query = torch.randn(1, 2, 3, 8)
        keys = torch.randn(1, 2, 4, 8)

        mha(query, [keys], [keys], [padding(mask)])

        weights = mha.attn  # (batch, heads, q_len, k_len)
        assert torch.allclose(weights.sum(-1), torch.ones(2, 2, 3), atol=1e-6)
        assert torch.all(weights[0, :, :, 3] == 0)
        assert torch.all(weights[1, :, :, 1] == 0)

    def test_masked_keys_do_not_change_output(self, registry):
        mha = MultiHeadAttention(registry, KEY, 8, 2)
        query = torch.randn(1, 1, 2, 8)
        keys = torch.randn(1, 1, 4, 8)
        mask = torch.tensor([[1.0, 1.0, 0.0, 0.0]])

        full = mha(query, [keys], [keys], [padding(mask)])
        trimmed = mha(query, [keys[:, :, :2]], [keys[:, :, :2]], [None])
        assert torch.allclose(full, trimmed, atol=1e-6)

    def test_beam_broadcast_of_keys(self, registry):
        mha = MultiHeadAttention(registry, KEY, 8, 2)
        query = torch.randn(3, 2, 1, 8)  # beam 3
        keys = torch.randn(1, 2, 5, 8)  # computed once per sentence
        mask = padding(torch.tensor([[1.0, 1.0, 1.0, 0.0, 0.0], [1.0] * 5]))

        out = mha(query, [keys], [keys], [mask])
        assert out.shape == (3, 2, 1, 8)
        for b in range(3):
            single = mha(query[b : b + 1], [keys], [keys], [mask])
            assert torch.allclose(out[b : b + 1], single, atol=1e-6)

    def test_beam_multiplicity_must_divide_evenly(self, registry):
        mha = MultiHeadAttention(registry, KEY, 8, 2)
        query = torch.randn(3, 2, 1, 8)
        keys = torch.randn(2, 2, 5, 8)
        with pytest.raises(ValueError, match="beam"):
            mha(query, [keys], [keys], [None])

    def test_mismatched_key_width(self, registry):
        mha = MultiHeadAttention(registry, KEY, 8, 2)
        query = torch.randn(1, 2, 3, 8)
        keys = torch.randn(1, 2, 4, 6)
        with pytest.raises(ValueError, match="width"):
            mha(query, [keys], [keys], [None])

    def test_no_sources(self, registry):
        with pytest.raises(ConfigurationError):
            MultiHeadAttention(registry, KEY, 8, 2, num_sources=0)
        mha = MultiHeadAttention(registry, KEY, 8, 2)
        with pytest.raises(ValueError):
            mha(torch.randn(1, 1, 2, 8), [], [], [])

    def test_source_count_mismatch(self, registry):
        mha = MultiHeadAttention(registry, KEY, 8, 2, num_sources=2)
        x = torch.randn(1, 1, 2, 8)
        with pytest.raises(ValueError):
            mha(x, [x], [x], [None])

    def test_heads_must_divide_width(self, registry):
        with pytest.raises(ConfigurationError):
            MultiHeadAttention(registry, KEY, 8, 3)

    def test_additional_sources_get_own_projections(self, registry):
        MultiHeadAttention(registry, KEY, 8, 2, num_sources=2)
        names = registry.names()
        assert "decoder_l1_context_Wk" in names
        assert "decoder_l1_context_Wk_enc2" in names
        assert "decoder_l1_context_Wv_enc2" in names
        assert "decoder_l1_context_Wq_enc2" not in names


    def test_attention_dropout_only_in_training(self, registry):
        mha = MultiHeadAttention(registry, KEY, 8, 2, dropout=0.5)
        x = torch.randn(1, 1, 3, 8)

        mha.eval()
        first = mha(x, [x], [x], [None])
        weights = mha.attn
        assert torch.allclose(weights.sum(-1), torch.ones(1, 2, 3), atol=1e-6)
        assert torch.equal(mha(x, [x], [x], [None]), first)

        mha.train()
        mha(x, [x], [x], [None])
        assert (mha.attn == 0).any()
        assert not torch.equal(mha.attn, weights)

class TestOutputProjection:

    def test_projection_applied_by_default(self, registry):
        projected = MultiHeadAttention(registry, KEY, 8, 2)
        # same key: shares the query/key/value weights with ``projected``
        raw = MultiHeadAttention(registry, KEY, 8, 2, no_projection=True)
        assert projected.output_projection is not None
        assert raw.output_projection is None

        x = torch.randn(1, 2, 3, 8)
        out = projected(x, [x], [x], [None])
        concatenated = raw(x, [x], [x], [None])

        assert torch.allclose(out, projected.output_projection(concatenated), atol=1e-6)
        assert not torch.allclose(out, concatenated)

    def test_projection_kept_when_widths_differ(self, registry):
        mha = MultiHeadAttention(registry, KEY, 8, 2, num_sources=2, no_projection=True)
        assert mha.output_projection is not None
        assert mha.output_projection.in_features == 16
