"""
Multi-Head Attention mechanism.

Implements:
- Scaled dot-product attention with additive masks
- Head splitting/joining over the (beam, batch, length, feature) layout
- Multi-head attention over one or more key/value sources
- The attention sublayer (pre-process, attention, post-process)

Reference: "Attention is All You Need" Section 3.2
"""

import math

import torch
import torch.nn as nn
import torch.nn.functional as F

from .config import ConfigurationError
from .layers import Dense, PrePostProcess
from .masking import atleast_4d


def split_heads(x, heads):
    """
    Split the feature axis into heads.

    Args:
        x: Tensor of shape (beam, batch, seq_len, d_model)
        heads: Number of heads

    Returns:
        Tensor of shape (beam * batch, heads, seq_len, d_model // heads)
    """
    beam, batch, steps, d_model = x.shape
    x = x.reshape(beam * batch, steps, heads, d_model // heads)
    return x.transpose(1, 2)


def join_heads(x, beam=1):
    """
    Inverse of ``split_heads``.

    Args:
        x: Tensor of shape (beam * batch, heads, seq_len, d_k)
        beam: Beam multiplicity folded into the first axis

    Returns:
        Tensor of shape (beam, batch, seq_len, heads * d_k)
    """
    beam_batch, heads, steps, d_k = x.shape
    x = x.transpose(1, 2).contiguous()
    return x.reshape(beam, beam_batch // beam, steps, heads * d_k)


def attention(query, key, value, mask=None, dropout=0.0, training=False):
    """
    Compute 'Scaled Dot-Product Attention'.

    Attention(Q, K, V) = softmax(QK^T / sqrt(d_k) + mask) V

    If the query carries more hypotheses than the keys (beam search with
    keys computed once per sentence), keys and values are tiled along the
    first axis to match.

    Args:
        query: Query tensor, shape (beam * batch, heads, q_len, d_k)
        key: Key tensor, shape (batch or beam * batch, heads, k_len, d_k)
        value: Value tensor, same leading shape as ``key``
        mask: Optional additive mask, shape (1 or batch or beam * batch, 1, 1 or q_len, k_len)
              as produced by ``to_additive_mask``
        dropout: Dropout probability on the attention weights
        training: Whether dropout is active

    Returns:
        tuple: (output, attention_weights)
            - output: shape (beam * batch, heads, q_len, d_k)
            - attention_weights: shape (beam * batch, heads, q_len, k_len)
    """
    rows = query.size(0)
    if key.size(0) != rows:
        beam = rows // key.size(0)
        key = key.repeat(beam, 1, 1, 1)
        value = value.repeat(beam, 1, 1, 1)

    d_k = query.size(-1)
    scores = torch.matmul(query, key.transpose(-2, -1)) / math.sqrt(d_k)

    if mask is not None:
        if mask.size(0) not in (1, rows):
            if rows % mask.size(0):
                raise ValueError(
                    f"Mask with {mask.size(0)} rows cannot be broadcast to {rows} queries"
                )
            mask = mask.repeat(rows // mask.size(0), 1, 1, 1)
        scores = scores + mask

    p_attn = scores.softmax(dim=-1)
    p_attn = F.dropout(p_attn, dropout, training)

    return torch.matmul(p_attn, value), p_attn


class MultiHeadAttention(nn.Module):
    """
    Multi-Head Attention over one or more key/value sources.

    MultiHead(Q, K, V) = Concat(head_1, ..., head_h) W^O
    where head_i = Attention(Q W^Q_i, K W^K_i, V W^V_i)

    The query projection is shared by all sources; each source has its own
    key and value projections. Outputs of several sources are concatenated
    along the feature axis before the output projection.

    Args:
        registry: ParameterRegistry of the model
        key: ParamKey locating the sublayer
        d_model: Model dimension (nanoGPT: n_embd)
        h: Number of attention heads (nanoGPT: n_head)
        num_sources: Number of key/value sources
        d_out: Output dimension (defaults to d_model)
        no_projection: Skip the output projection when the concatenated
                       width already equals d_out
        dropout: Dropout probability on attention weights
    """

    def __init__(self, registry, key, d_model, h, num_sources=1, d_out=None, no_projection=False, dropout=0.0):
        super(MultiHeadAttention, self).__init__()
        if d_model % h != 0:
            raise ConfigurationError(f"d_model={d_model} must be divisible by h={h}")
        if num_sources < 1:
            raise ConfigurationError("Multi-head attention needs at least one key/value source")
        d_out = d_model if d_out is None else d_out

        self.d_k = d_model // h
        self.h = h
        self.d_model = d_model
        self.d_out = d_out
        self.dropout = dropout
        self.attn = None  # Store attention weights for visualization

        self.query = Dense(registry, key, "q", d_model, d_model)
        keys, values = [], []
        for i in range(num_sources):
            suffix = "" if i == 0 else f"_enc{i + 1}"
            keys.append(Dense(registry, key, "k" + suffix, d_model, d_model))
            values.append(Dense(registry, key, "v" + suffix, d_model, d_model))
        self.keys = nn.ModuleList(keys)
        self.values = nn.ModuleList(values)

        d_att = d_model * num_sources
        self.output_projection = None
        if not no_projection or d_att != d_out:
            self.output_projection = Dense(registry, key, "o", d_att, d_out)

    @property
    def num_sources(self):
        return len(self.keys)

    def forward(self, query, keys, values, masks):
        """
        Forward pass for multi-head attention.

        Args:
            query: Query tensor, shape (beam, batch, q_len, d_model)
            keys: List of key tensors, shape (beam or 1, batch, k_len, d_model)
            values: List of value tensors, same shapes as ``keys``
            masks: List of additive masks (or None entries), one per source

        Returns:
            Output tensor, shape (beam, batch, q_len, d_out)

        Note:
            For self-attention, query = key = value
            For cross-attention (decoder attending to encoder):
                query comes from decoder, key/value from encoder
        """
        if len(keys) == 0:
            raise ValueError("Multi-head attention needs at least one key/value source")
        if not len(keys) == len(values) == len(masks) == self.num_sources:
            raise ValueError(
                f"Expected {self.num_sources} key/value/mask triples, got "
                f"{len(keys)}/{len(values)}/{len(masks)}"
            )

        query = atleast_4d(query)
        if query.size(-1) != self.d_model:
            raise ValueError(f"Query width {query.size(-1)} does not match d_model={self.d_model}")
        dim_beam = query.size(0)

        # 1) Do all the linear projections in batch: d_model => h x d_k
        qh = split_heads(self.query(query), self.h)

        outputs = []
        for proj_k, proj_v, k, v, mask in zip(self.keys, self.values, keys, values, masks):
            k, v = atleast_4d(k), atleast_4d(v)
            if k.size(-1) != self.d_model or v.size(-1) != self.d_model:
                raise ValueError(
                    f"Key/value width {k.size(-1)}/{v.size(-1)} does not match "
                    f"query width {self.d_model}"
                )
            if k.size(0) not in (1, dim_beam):
                raise ValueError(
                    f"Key beam size {k.size(0)} must be 1 or equal to query beam size {dim_beam}"
                )
            kh = split_heads(proj_k(k), self.h)
            vh = split_heads(proj_v(v), self.h)

            # 2) Apply attention on all the projected vectors in batch
            x, self.attn = attention(qh, kh, vh, mask, self.dropout, self.training)

            # 3) "Concat" heads back into the feature axis
            outputs.append(join_heads(x, dim_beam))

        x = outputs[0] if len(outputs) == 1 else torch.cat(outputs, dim=-1)

        if self.output_projection is not None:
            x = self.output_projection(x)
        return x


class AttentionSublayer(nn.Module):
    """
    Attention wrapped in pre/post-processing.

    output = post(MultiHead(pre(x), keys, values, masks), x)

    Args:
        registry: ParameterRegistry of the model
        key: ParamKey locating the sublayer
        d_model: Model dimension
        h: Number of heads
        num_sources: Number of key/value sources
        dropout: Dropout inside pre/post-processing
        attention_dropout: Dropout on attention weights
        preprocess: Pre-processing ops
        postprocess: Post-processing ops
        no_projection: See MultiHeadAttention
    """

    def __init__(
        self,
        registry,
        key,
        d_model,
        h,
        num_sources=1,
        dropout=0.1,
        attention_dropout=0.0,
        preprocess="",
        postprocess="dan",
        no_projection=False,
    ):
        super(AttentionSublayer, self).__init__()
        self.pre = PrePostProcess(registry, key, preprocess, d_model, dropout)
        self.attention = MultiHeadAttention(
            registry, key, d_model, h, num_sources, no_projection=no_projection, dropout=attention_dropout
        )
        self.post = PrePostProcess(registry, key, postprocess, d_model, dropout, post=True)

    def forward(self, x, keys, values, masks):
        output = self.attention(self.pre(x), keys, values, masks)
        return self.post(output, x)
