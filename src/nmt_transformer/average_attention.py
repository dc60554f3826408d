"""
Average Attention Network sublayer.

Replaces decoder self-attention by the running average of the current and all
previous positions, followed by a dense stack and an optional gate.

Reference: "Accelerating Neural Transformer via an Average Attention Network"
(Zhang et al., 2018), https://arxiv.org/abs/1805.00631
"""

import torch
import torch.nn as nn

from .feedforward import FeedForwardStack
from .layers import Dense, PrePostProcess


def cumulative_average(x, mask):
    """
    Matrix form of the running average over a full sequence.

    Each row of ``mask`` is normalised to sum to one and multiplied with the
    sequence, so position i receives the mean of all unmasked j <= i. Rows with
    no unmasked position yield zeros.

    Args:
        x: Sequence, shape (..., seq_len, d_model)
        mask: Multiplicative mask, shape broadcastable to (..., seq_len, seq_len),
              normally causal_mask(seq_len) times a padding mask

    Returns:
        Averages, shape (..., seq_len, d_model)
    """
    mask = mask.to(x.dtype)
    weights = mask / mask.sum(-1, keepdim=True).clamp(min=1.0)
    return torch.matmul(weights, x)


def running_average(previous, x, position):
    """Incremental form: (previous * t + x) / (t + 1) at position t."""
    return (previous * position + x) / (position + 1)


class AverageAttention(nn.Module):
    """
    Average-attention sublayer.

    Args:
        registry: ParameterRegistry of the model
        key: ParamKey locating the sublayer
        d_model: Model dimension
        d_aan: Hidden width of the dense stack
        depth: Depth of the dense stack
        activation: Activation name for hidden layers
        dropout: Dropout inside pre/post-processing
        ffn_dropout: Dropout after hidden activations
        gate: Blend input and average through two sigmoid gates
        preprocess: Pre-processing ops (applied to the average)
        postprocess: Post-processing ops (residual is the raw input)
    """

    def __init__(
        self,
        registry,
        key,
        d_model,
        d_aan,
        depth=2,
        activation="relu",
        dropout=0.1,
        ffn_dropout=0.0,
        gate=True,
        preprocess="",
        postprocess="dan",
    ):
        super(AverageAttention, self).__init__()
        self.pre = PrePostProcess(registry, key, preprocess, d_model, dropout)
        self.stack = FeedForwardStack(
            registry, key, d_model, d_aan, depth, activation, ffn_dropout, always_project=False
        )
        self.input_gate = None
        self.forget_gate = None
        if gate:
            self.input_gate = Dense(registry, key, "i", d_model, d_model, torch.sigmoid)
            self.forget_gate = Dense(registry, key, "f", d_model, d_model, torch.sigmoid)
        self.post = PrePostProcess(registry, key, postprocess, d_model, dropout, post=True)

    def forward(self, x, mask, previous=None, position=0):
        """
        Args:
            x: Current input, shape (beam, batch, seq_len, d_model)
            mask: Multiplicative self mask used in matrix form
            previous: Cached running average from the previous step
            position: Number of positions already decoded

        Returns:
            tuple: (output, average) where ``average`` is the new cache entry
        """
        average = x
        if position > 0:
            average = running_average(previous, x, position)
        elif x.size(-2) > 1:
            # no history and more than one step: training or scoring
            average = cumulative_average(x, mask)

        y = self.stack(self.pre(average))

        if self.input_gate is not None:
            # the two gates are learned independently and do not sum to one
            y = self.input_gate(x) * x + self.forget_gate(y) * y

        return self.post(y, x), average
