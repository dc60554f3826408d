"""Tests for dense layers, layer norm, pre/post-processing and feed-forward."""

import pytest
import torch

from nmt_transformer import (
    ConfigurationError,
    Dense,
    FeedForwardStack,
    LayerNorm,
    ParamKey,
    PositionwiseFeedForward,
    PrePostProcess,
    activation_by_name,
)

KEY = ParamKey("encoder", 1, "ffn")


class TestActivation:

    def test_known_activations(self):
        x = torch.tensor([-1.0, 0.0, 2.0])
        assert torch.equal(activation_by_name("relu")(x), torch.tensor([0.0, 0.0, 2.0]))
        assert torch.allclose(activation_by_name("swish")(x), x * torch.sigmoid(x))

    def test_unknown_activation(self):
        with pytest.raises(ConfigurationError, match="gelu"):
            activation_by_name("gelu")


class TestDense:

    def test_affine(self, registry):
        dense = Dense(registry, KEY, "1", 4, 6)
        x = torch.randn(2, 3, 4)
        assert torch.allclose(dense(x), x @ dense.weight + dense.bias)
        assert dense.in_features == 4
        assert dense.out_features == 6
        assert "encoder_l1_ffn_W1" in registry.names()


class TestLayerNorm:

    def test_normalizes_last_axis(self, registry):
        norm = LayerNorm(registry, KEY, 16)
        x = torch.randn(4, 16) * 5 + 3
        y = norm(x)
        assert torch.allclose(y.mean(-1), torch.zeros(4), atol=1e-5)
        assert torch.allclose(y.var(-1, unbiased=False), torch.ones(4), atol=1e-3)

    def test_pre_and_post_norms_are_distinct(self, registry):
        pre = LayerNorm(registry, KEY, 8, suffix="_pre")
        post = LayerNorm(registry, KEY, 8)
        assert pre.scale is not post.scale


class TestPrePostProcess:

    def test_unknown_symbol(self, registry):
        with pytest.raises(ConfigurationError, match="'x'"):
            PrePostProcess(registry, KEY, "dxn", 8, post=True)

    def test_residual_ops_only_after_sublayer(self, registry):
        with pytest.raises(ConfigurationError):
            PrePostProcess(registry, KEY, "a", 8)
        with pytest.raises(ConfigurationError):
            PrePostProcess(registry, KEY, "h", 8)

    def test_add_residual(self, registry):
        post = PrePostProcess(registry, KEY, "a", 8, post=True)
        x, residual = torch.randn(2, 8), torch.randn(2, 8)
        assert torch.allclose(post(x, residual), x + residual)

    def test_order_matters(self, registry):
        x, residual = torch.randn(2, 8), torch.randn(2, 8)
        add_norm = PrePostProcess(registry, KEY, "an", 8, post=True)
        norm_add = PrePostProcess(registry, KEY, "na", 8, post=True)
        assert torch.allclose(add_norm(x, residual), add_norm.norm(x + residual))
        assert torch.allclose(norm_add(x, residual), norm_add.norm(x) + residual)

    def test_dropout_inactive_in_eval_or_at_zero(self, registry):
        x = torch.randn(4, 8)
        zero = PrePostProcess(registry, KEY, "d", 8, dropout=0.0)
        zero.train()
        assert torch.equal(zero(x), x)

        pre = PrePostProcess(registry, KEY, "d", 8, dropout=0.9)
        pre.eval()
        assert torch.equal(pre(x), x)
        pre.train()
        assert not torch.equal(pre(x), x)

    def test_highway_blends_with_gate(self, registry):
        post = PrePostProcess(registry, KEY, "h", 8, post=True)
        with torch.no_grad():
            post.highway.weight.zero_()
        x, residual = torch.randn(2, 8), torch.randn(2, 8)
        # zero transform gives a gate of sigmoid(0) = 0.5
        assert torch.allclose(post(x, residual), 0.5 * x + 0.5 * residual)

    def test_empty_ops_is_identity(self, registry):
        x = torch.randn(2, 8)
        assert torch.equal(PrePostProcess(registry, KEY, "", 8)(x), x)


class TestFeedForward:

    def test_depth_below_one(self, registry):
        with pytest.raises(ConfigurationError, match="smaller than 1"):
            FeedForwardStack(registry, KEY, 8, 16, 0, "relu")

    def test_depth_controls_number_of_layers(self, registry):
        stack = FeedForwardStack(registry, KEY, 8, 16, 3, "swish")
        assert len(stack) == 3
        assert [layer.out_features for layer in stack.layers] == [16, 16, 8]

    def test_single_layer_maps_back_to_model_width(self, registry):
        stack = FeedForwardStack(registry, KEY, 8, 16, 1, "relu")
        assert len(stack) == 1
        assert stack.layers[0].activation is None

    def test_optional_final_projection(self, registry):
        stack = FeedForwardStack(registry, KEY, 8, 16, 1, "relu", always_project=False)
        assert len(stack) == 0

    def test_sublayer_preserves_width(self, registry):
        ffn = PositionwiseFeedForward(registry, KEY, 8, 32, depth=2, dropout=0.0)
        x = torch.randn(1, 2, 5, 8)
        assert ffn(x).shape == x.shape
        assert ffn.d_ff == 32

    def test_unknown_activation_in_sublayer(self, registry):
        with pytest.raises(ConfigurationError):
            PositionwiseFeedForward(registry, KEY, 8, 32, activation="tanh")

    def test_hidden_dropout_only_in_training(self, registry):
        stack = FeedForwardStack(registry, KEY, 8, 16, 2, "relu", dropout=0.9)
        x = torch.randn(2, 5, 8)

        stack.eval()
        expected = stack(x)
        assert torch.equal(stack(x), expected)

        stack.train()
        assert not torch.allclose(stack(x), expected)
