"""
Output layer producing vocabulary scores.

Implements the final projection from d_model to the target vocabulary. The
weight can be tied (transposed) to an embedding matrix and scoring can be
restricted to a shortlist of vocabulary entries.
"""

import torch
import torch.nn as nn
from torch.nn.functional import log_softmax

from .params import glorot_uniform, zeros


class Generator(nn.Module):
    """
    Linear projection to (unnormalized) vocabulary logits.

    Args:
        registry: ParameterRegistry of the model
        key: ParamKey of the layer; weights use roles W and b
        d_model: Model dimension (nanoGPT: n_embd)
        vocab: Vocabulary size (nanoGPT: vocab_size)
        tie_to: Optional key of an embedding matrix (vocab, d_model) to share
    """

    def __init__(self, registry, key, d_model, vocab, tie_to=None):
        super(Generator, self).__init__()
        weight_key = key.child("W")
        if tie_to is not None:
            registry.tie(weight_key, tie_to, transpose=True)
        self.weight = registry.get(weight_key, (d_model, vocab), glorot_uniform)
        self.transposed = registry.is_transposed(weight_key)
        self.bias = registry.get(key.child("b"), (vocab,), zeros)
        self.shortlist = None

    def set_shortlist(self, indices):
        """Restrict scoring to ``indices`` (None to score the full vocabulary)."""
        if indices is not None:
            indices = torch.as_tensor(indices, dtype=torch.long)
        self.shortlist = indices

    def projection(self):
        """Weight of shape (d_model, vocab or shortlist size) and matching bias."""
        weight = self.weight.t() if self.transposed else self.weight
        bias = self.bias
        if self.shortlist is not None:
            indices = self.shortlist.to(weight.device)
            weight = weight.index_select(1, indices)
            bias = bias.index_select(0, indices)
        return weight, bias

    def forward(self, x):
        """
        Project to vocabulary scores.

        Args:
            x: Input tensor, shape (..., d_model)

        Returns:
            Unnormalized logits, shape (..., vocab_size or shortlist size)
        """
        weight, bias = self.projection()
        return torch.matmul(x, weight) + bias

    def log_probs(self, x):
        """Log probabilities over the (shortlisted) vocabulary."""
        return log_softmax(self(x), dim=-1)

    # Shape properties
    @property
    def d_model(self):
        """Model dimension."""
        return self.weight.size(1) if self.transposed else self.weight.size(0)

    @property
    def vocab_size(self):
        """Vocabulary size."""
        return self.bias.size(0)
