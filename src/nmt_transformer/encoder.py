"""
Transformer encoder stack.

Provides:
- EncoderLayer: Self-attention + feed-forward
- EncoderTransformer: Embeddings, positions and a stack of encoder layers

Reference: "Attention is All You Need" Section 3.1
"""

import logging
import math

import torch.nn as nn

from .embeddings import Embeddings, add_positions, embedding_key, word_dropout
from .masking import to_additive_mask
from .states import EncoderState
from .sublayers import SublayerFactory

logger = logging.getLogger(__name__)


class EncoderLayer(nn.Module):
    """
    Single encoder layer with self-attention and feed-forward.

    Args:
        factory: SublayerFactory of the encoder
        layer: 1-based layer index
    """

    def __init__(self, factory, layer):
        super(EncoderLayer, self).__init__()
        self.self_attn = factory.attention(layer, "self")
        self.feed_forward = factory.feed_forward(layer)

    def forward(self, x, mask):
        """
        Args:
            x: Input tensor, shape (1, batch, seq_len, d_model)
            mask: Additive source mask, shape (batch, 1, 1, seq_len)

        Returns:
            Output tensor, shape (1, batch, seq_len, d_model)
        """
        x = self.self_attn(x, [x], [x], [mask])
        return self.feed_forward(x)


class EncoderTransformer(nn.Module):
    """
    Encoder for one source stream of a CorpusBatch.

    Args:
        options: TransformerOptions
        registry: ParameterRegistry of the model
        batch_index: Which sub-batch of the CorpusBatch to encode
        scope: Parameter scope ("encoder", "encoder2", ...)
        vectors: Optional pretrained embedding matrix (vocab, dim_emb)
    """

    def __init__(self, options, registry, batch_index=0, scope="encoder", vectors=None):
        super(EncoderTransformer, self).__init__()
        self.options = options
        self.registry = registry
        self.batch_index = batch_index
        self.scope = scope

        factory = SublayerFactory(options, registry, scope)
        shared = options.tied_embeddings_src or options.tied_embeddings_all
        self.embeddings = Embeddings(
            registry,
            embedding_key(scope, shared),
            options.vocab_size(batch_index),
            options.dim_emb,
            fixed=options.embedding_fix_src,
            vectors=vectors,
            normalize=options.embedding_normalization,
        )
        self.emb_process = factory.embedding_processing()
        self.layers = nn.ModuleList(
            [EncoderLayer(factory, i) for i in range(1, options.enc_depth + 1)]
        )
        logger.debug("Built %s with %d layers", scope, options.enc_depth)

    def build(self, batch):
        """Encode ``batch``; returns an EncoderState."""
        return self(batch)

    def forward(self, batch):
        """
        Args:
            batch: CorpusBatch; sub-batch ``batch_index`` is encoded

        Returns:
            EncoderState with context (batch, src_len, d_model) and
            mask (batch, src_len)
        """
        sub = batch[self.batch_index]
        dim_emb = self.options.dim_emb

        x = self.embeddings(sub.ids)
        x = word_dropout(x, self.options.dropout_src, self.training)

        # according to the paper embeddings are scaled up by sqrt(d_model)
        x = add_positions(x * math.sqrt(dim_emb))
        x = self.emb_process(x.unsqueeze(0))  # (1, batch, src_len, d_model)

        mask = to_additive_mask(sub.mask.unsqueeze(0).unsqueeze(2))  # (batch, 1, 1, src_len)
        for layer in self.layers:
            x = layer(x, mask)

        return EncoderState(x.squeeze(0), sub.mask, batch)
