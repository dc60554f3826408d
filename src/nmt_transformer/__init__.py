"""
Encoder-Decoder Transformer core for neural machine translation.

Based on "Attention is All You Need" (Vaswani et al., 2017), with the
Average Attention Network decoder variant (Zhang et al., 2018).

This package provides the computational layer of the model: multi-head
attention, feed-forward sublayers, positional encoding, masking, and the
decoder state machine used for incremental decoding and beam search.

Two regimes share the same layer code:
- full sequence (training/scoring): one decoder step over the whole target
- incremental decoding: one step per generated token, threading immutable
  DecoderState objects that cache per-layer history

Naming convention:
- Options follow marian names (dim-emb, transformer-heads, enc-depth, ...)
- nanoGPT equivalents: n_embd=dim_emb, n_head=transformer_heads, n_layer=enc_depth
"""

from .config import ConfigurationError, TransformerOptions
from .params import ParamKey, ParameterRegistry
from .masking import causal_mask, padding_mask, to_additive_mask
from .embeddings import Embeddings, positional_signal, add_positions
from .layers import Dense, LayerNorm, PrePostProcess, activation_by_name
from .feedforward import FeedForwardStack, PositionwiseFeedForward
from .attention import MultiHeadAttention, AttentionSublayer, attention, split_heads, join_heads
from .average_attention import AverageAttention, cumulative_average, running_average
from .generator import Generator
from .batch import CorpusBatch, SubBatch
from .states import EncoderState, DecoderState, LayerState
from .sublayers import SublayerFactory
from .encoder import EncoderTransformer, EncoderLayer
from .decoder import DecoderTransformer, DecoderLayer
from .model import EncoderDecoder, make_model
from .decoding import greedy_decode, beam_search

__all__ = [
    # Main model
    "EncoderDecoder",
    "make_model",
    # Configuration
    "TransformerOptions",
    "ConfigurationError",
    # Parameters
    "ParamKey",
    "ParameterRegistry",
    # Encoder/Decoder stacks
    "EncoderTransformer",
    "EncoderLayer",
    "DecoderTransformer",
    "DecoderLayer",
    "SublayerFactory",
    # States
    "EncoderState",
    "DecoderState",
    "LayerState",
    # Attention
    "MultiHeadAttention",
    "AttentionSublayer",
    "attention",
    "split_heads",
    "join_heads",
    "AverageAttention",
    "cumulative_average",
    "running_average",
    # Masking
    "causal_mask",
    "padding_mask",
    "to_additive_mask",
    # Layers
    "Dense",
    "LayerNorm",
    "PrePostProcess",
    "activation_by_name",
    # Embeddings
    "Embeddings",
    "positional_signal",
    "add_positions",
    # Feed-forward
    "FeedForwardStack",
    "PositionwiseFeedForward",
    # Generator
    "Generator",
    # Batches
    "CorpusBatch",
    "SubBatch",
    # Decoding
    "greedy_decode",
    "beam_search",
]
