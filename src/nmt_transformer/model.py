"""
Full Encoder-Decoder Transformer model.

Provides:
- EncoderDecoder: Main model class wiring encoders, decoder and the
  parameter registry together
- make_model: Factory function to create a model from options

Reference: "Attention is All You Need" (Vaswani et al., 2017)
"""

import logging

import torch.nn as nn

from .config import ConfigurationError, resolve_options
from .decoder import DecoderTransformer
from .encoder import EncoderTransformer
from .params import ParameterRegistry

logger = logging.getLogger(__name__)


class EncoderDecoder(nn.Module):
    """
    A standard Encoder-Decoder architecture.

    Base for sequence-to-sequence models like machine translation. Source
    streams are sub-batches ``0 .. num_encoders - 1`` of a CorpusBatch, the
    target stream is sub-batch ``num_encoders``.

    Components:
        - registry: ParameterRegistry owning every weight
        - encoders: One EncoderTransformer per source stream
        - decoder: DecoderTransformer (including the output layer)

    Args:
        options: TransformerOptions
        num_encoders: Number of source streams
        src_vectors: Optional list of pretrained source embedding matrices
        tgt_vectors: Optional pretrained target embedding matrix
    """

    def __init__(self, options, num_encoders=1, src_vectors=None, tgt_vectors=None):
        super(EncoderDecoder, self).__init__()
        if len(options.dim_vocabs) < num_encoders + 1:
            raise ConfigurationError(
                f"dim-vocabs lists {len(options.dim_vocabs)} vocabularies, "
                f"{num_encoders + 1} needed for {num_encoders} encoder(s) and a decoder"
            )
        src_vectors = src_vectors or [None] * num_encoders
        self.options = options
        self.registry = ParameterRegistry()
        self.encoders = nn.ModuleList(
            [
                EncoderTransformer(
                    options,
                    self.registry,
                    batch_index=i,
                    scope="encoder" if i == 0 else f"encoder{i + 1}",
                    vectors=src_vectors[i],
                )
                for i in range(num_encoders)
            ]
        )
        self.decoder = DecoderTransformer(
            options,
            self.registry,
            batch_index=num_encoders,
            num_encoders=num_encoders,
            vectors=tgt_vectors,
        )
        logger.info(
            "Model: %d parameter tensors, %.2fM parameters",
            len(self.registry),
            sum(p.numel() for p in self.parameters()) / 1e6,
        )

    def forward(self, batch):
        """
        Score the reference target of ``batch``.

        Args:
            batch: CorpusBatch with source stream(s) and a target stream

        Returns:
            Logits, shape (1, batch, tgt_len - 1, vocab)
        """
        state = self.start_state(batch)
        return self.decoder.step(self.decoder.targets_from_batch(state)).logits

    def encode(self, batch):
        """Run every encoder; returns a list of EncoderState."""
        return [encoder.build(batch) for encoder in self.encoders]

    def start_state(self, batch, encoder_states=None):
        """Initial DecoderState; encodes ``batch`` if no states are given."""
        if encoder_states is None:
            encoder_states = self.encode(batch)
        return self.decoder.start_state(batch, encoder_states)

    def step(self, state):
        return self.decoder.step(state)

    def select(self, state, hyp_indices, beam_size):
        return self.decoder.select(state, hyp_indices, beam_size)


def make_model(options=None, num_encoders=1, src_vectors=None, tgt_vectors=None, **overrides):
    """
    Construct a model from options.

    Args:
        options: TransformerOptions (defaults to the base configuration)
        num_encoders: Number of source streams
        src_vectors: Optional list of pretrained source embedding matrices,
                     one (vocab, dim_emb) tensor or None per encoder
        tgt_vectors: Optional pretrained target embedding matrix
        **overrides: Option overrides, e.g. ``enc_depth=2`` or
                     ``**{"transformer-heads": 4}``

    Returns:
        EncoderDecoder model instance

    Example:
        >>> model = make_model(dim_emb=256, transformer_heads=4, dim_vocabs=[8000, 8000])
    """
    options = resolve_options(options, **overrides)
    return EncoderDecoder(
        options, num_encoders=num_encoders, src_vectors=src_vectors, tgt_vectors=tgt_vectors
    )
