"""
Attention masks.

Masks come in two forms:
- multiplicative: 1.0 where a key position may be attended, 0.0 otherwise
- additive (log domain): 0.0 where allowed, a large negative value otherwise,
  added to the attention scores before the softmax
"""

import torch

# exp(MASK_VALUE) underflows to exactly 0 in float32 while staying finite
MASK_VALUE = -1e9


def causal_mask(length, device=None):
    """
    Lower triangular mask for autoregressive attention.

    Position i may attend to every position j <= i.

    Args:
        length: Sequence length

    Returns:
        Float tensor of shape (length, length)
    """
    return torch.tril(torch.ones(length, length, device=device))


def padding_mask(ids, pad):
    """1.0 for real tokens, 0.0 for padding; same shape as ``ids``."""
    return (ids != pad).float()


def atleast_4d(x):
    """Prepend singleton axes until ``x`` has four dimensions."""
    while x.dim() < 4:
        x = x.unsqueeze(0)
    return x


def to_additive_mask(mask):
    """
    Convert a multiplicative mask to an additive log-domain mask.

    Args:
        mask: Mask of shape (beam, batch, query_len, key_len) or fewer leading
              axes (missing ones are treated as singleton)

    Returns:
        Tensor of shape (beam * batch, 1, query_len, key_len), broadcastable
        against per-head scores of shape (beam * batch, heads, query_len, key_len)
    """
    mask = atleast_4d(mask.float())
    beam, batch, query_len, key_len = mask.shape
    mask = (1.0 - mask) * MASK_VALUE
    return mask.reshape(beam * batch, 1, query_len, key_len)
