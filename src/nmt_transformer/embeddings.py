"""
Token and positional embeddings.

Provides:
- positional_signal: Sinusoidal position signal starting at any offset
- Embeddings: Token embeddings backed by the parameter registry, with tying,
  pretrained vectors and freezing
- word_dropout: Dropout of whole token positions

Reference: "Attention is All You Need" Section 3.4 and 3.5
"""

import math

import torch
import torch.nn as nn
import torch.nn.functional as F

from .params import ParamKey, glorot_uniform


def positional_signal(dim, length, start=0, device=None):
    """
    Sinusoidal position signal.

    For absolute position p = start + k and band i < dim // 2:
        signal[k, 0, 2i]   = sin(p * exp(-i * ln(10000) / (dim // 2 - 1)))
        signal[k, 0, 2i+1] = cos(p * exp(-i * ln(10000) / (dim // 2 - 1)))

    Args:
        dim: Feature dimension (d_model)
        length: Number of positions
        start: Absolute position of the first entry (decoding offset)

    Returns:
        Tensor of shape (length, 1, dim), broadcast across the batch
    """
    num_bands = dim // 2
    increment = math.log(10000.0) / max(num_bands - 1, 1)

    position = torch.arange(start, start + length, dtype=torch.float32, device=device)
    bands = torch.arange(num_bands, dtype=torch.float32, device=device)
    angles = position.unsqueeze(1) * torch.exp(bands * -increment)  # (length, bands)

    signal = torch.zeros(length, dim, device=device)
    signal[:, 0 : 2 * num_bands : 2] = torch.sin(angles)
    signal[:, 1 : 2 * num_bands : 2] = torch.cos(angles)
    return signal.unsqueeze(1)


def add_positions(x, start=0):
    """Add the position signal to ``x`` of shape (..., length, dim)."""
    dim, length = x.size(-1), x.size(-2)
    signal = positional_signal(dim, length, start, device=x.device).to(x.dtype)
    return x + signal.squeeze(1)


def word_dropout(x, p, training):
    """
    Drop whole token positions of ``x`` (..., length, dim).

    The same keep/drop decision is shared by every batch entry and feature of
    a position; kept positions are scaled by 1 / (1 - p).
    """
    if not training or p <= 0.0:
        return x
    shape = [1] * x.dim()
    shape[-2] = x.size(-2)
    keep = torch.bernoulli(torch.full(shape, 1.0 - p, device=x.device, dtype=x.dtype))
    return x * keep / (1.0 - p)


class Embeddings(nn.Module):
    """
    Token embeddings.

    The embedding matrix is owned by the registry, so two ``Embeddings`` with
    the same key (tied source/target embeddings) share one parameter.

    Args:
        registry: ParameterRegistry of the model
        key: ParamKey of the embedding matrix
        vocab: Vocabulary size
        dim: Model dimension (nanoGPT: n_embd)
        fixed: Do not train the matrix
        vectors: Optional pretrained matrix of shape (vocab, dim)
        normalize: L2-normalise each pretrained vector
    """

    def __init__(self, registry, key, vocab, dim, fixed=False, vectors=None, normalize=False):
        super(Embeddings, self).__init__()
        if vectors is not None:
            if tuple(vectors.shape) != (vocab, dim):
                raise ValueError(
                    f"Pretrained embeddings have shape {tuple(vectors.shape)}, "
                    f"expected {(vocab, dim)}"
                )
            if normalize:
                vectors = F.normalize(vectors.float(), dim=-1)
            self.weight = registry.set(key, vectors, requires_grad=not fixed)
        else:
            self.weight = registry.get(key, (vocab, dim), glorot_uniform)
            if fixed:
                self.weight.requires_grad_(False)
        self.key = key
        self.d_model = dim

    def forward(self, ids):
        """
        Look up embeddings.

        Args:
            ids: Token indices, shape (..., seq_len)

        Returns:
            Embeddings, shape (..., seq_len, d_model)
        """
        return F.embedding(ids, self.weight)

    @property
    def vocab_size(self):
        """Vocabulary size."""
        return self.weight.size(0)


def embedding_key(scope, shared):
    """Key of the embedding matrix for ``scope``; ``Wemb`` when shared."""
    return ParamKey("Wemb") if shared else ParamKey(scope, role="Wemb")
