"""
Position-wise Feed-Forward Network.

FFN(x) = act(xW_1 + b_1)W_2 + b_2, generalised to a stack of ``depth`` dense
layers.

Reference: "Attention is All You Need" Section 3.3
"""

import torch.nn as nn

from .config import ConfigurationError
from .layers import Dense, PrePostProcess, activation_by_name


class FeedForwardStack(nn.Module):
    """
    Stack of dense layers applied to each position independently.

    The first ``depth - 1`` layers map to ``d_ff`` with activation and
    dropout; the last maps back to ``d_model`` without activation. With
    ``always_project=False`` the last layer is only added when the width
    coming out of the hidden layers differs from ``d_model``.

    Args:
        registry: ParameterRegistry of the model
        key: ParamKey locating the sublayer
        d_model: Model dimension (input and output) (nanoGPT: n_embd)
        d_ff: Hidden dimension
        depth: Number of dense layers (>= 1)
        activation: Activation name ("relu" or "swish")
        dropout: Dropout after each hidden activation
    """

    def __init__(self, registry, key, d_model, d_ff, depth, activation, dropout=0.0, always_project=True):
        super(FeedForwardStack, self).__init__()
        if depth < 1:
            raise ConfigurationError(f"Filter depth {depth} is smaller than 1")
        act = activation_by_name(activation)

        layers = []
        width = d_model
        for i in range(1, depth):
            layers.append(Dense(registry, key, str(i), width, d_ff, act, dropout))
            width = d_ff
        if always_project or width != d_model:
            layers.append(Dense(registry, key, str(depth), width, d_model))
        self.layers = nn.ModuleList(layers)

    def forward(self, x):
        for layer in self.layers:
            x = layer(x)
        return x

    def __len__(self):
        return len(self.layers)


class PositionwiseFeedForward(nn.Module):
    """
    Feed-forward sublayer: pre-process, dense stack, post-process.

    Args:
        registry: ParameterRegistry of the model
        key: ParamKey locating the sublayer
        d_model: Model dimension (nanoGPT: n_embd)
        d_ff: Inner layer dimension (typically 4 * d_model)
        depth: Number of dense layers
        activation: Activation name
        dropout: Dropout inside pre/post-processing
        ffn_dropout: Dropout after hidden activations
        preprocess: Pre-processing ops
        postprocess: Post-processing ops
    """

    def __init__(
        self,
        registry,
        key,
        d_model,
        d_ff,
        depth=2,
        activation="relu",
        dropout=0.1,
        ffn_dropout=0.0,
        preprocess="",
        postprocess="dan",
    ):
        super(PositionwiseFeedForward, self).__init__()
        self.pre = PrePostProcess(registry, key, preprocess, d_model, dropout)
        self.stack = FeedForwardStack(registry, key, d_model, d_ff, depth, activation, ffn_dropout)
        self.post = PrePostProcess(registry, key, postprocess, d_model, dropout, post=True)
        self.d_model = d_model
        self.d_ff = d_ff

    def forward(self, x):
        """
        Args:
            x: Input tensor, shape (..., d_model)

        Returns:
            Output tensor, shape (..., d_model)
        """
        return self.post(self.stack(self.pre(x)), x)
