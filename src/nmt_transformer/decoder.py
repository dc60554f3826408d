"""
Transformer decoder stack.

The decoder is a state machine: ``start_state`` creates an empty
``DecoderState`` and every ``step`` consumes a state and returns its
successor. One step either processes a whole reference target sequence
(training, scoring; position 0) or a single new token per hypothesis
(incremental decoding).

Provides:
- DecoderLayer: Autoregressive sublayer + cross-attention(s) + feed-forward
- DecoderTransformer: Embeddings, positions, decoder layers and output layer

Reference: "Attention is All You Need" Section 3.1
"""

import logging
import math
from dataclasses import replace

import torch
import torch.nn as nn

from .config import ConfigurationError
from .embeddings import Embeddings, add_positions, embedding_key, word_dropout
from .generator import Generator
from .masking import atleast_4d, causal_mask, to_additive_mask
from .params import ParamKey
from .states import DecoderState, LayerState
from .sublayers import SublayerFactory

logger = logging.getLogger(__name__)

AUTOREGRESSIVE_LAYERS = ("self-attention", "average-attention")


class DecoderLayer(nn.Module):
    """
    Single decoder layer.

    Architecture:
        1. Autoregressive sublayer: masked self-attention or average attention
        2. One cross-attention sublayer per encoder
        3. Position-wise feed-forward network

    Args:
        factory: SublayerFactory of the decoder
        layer: 1-based layer index
        autoreg: "self-attention" or "average-attention"
        num_encoders: Number of encoders to attend to
    """

    def __init__(self, factory, layer, autoreg, num_encoders=1):
        super(DecoderLayer, self).__init__()
        self.self_attn = None
        self.average_attn = None
        if autoreg == "self-attention":
            self.self_attn = factory.attention(layer, "self")
        elif autoreg == "average-attention":
            self.average_attn = factory.average_attention(layer)
        else:
            raise ConfigurationError(
                f"Unknown auto-regressive layer type in transformer decoder '{autoreg}'"
            )
        # multiple encoders are attended one after another
        self.src_attn = nn.ModuleList(
            [
                factory.attention(layer, "context" if j == 0 else f"context_enc{j + 1}")
                for j in range(num_encoders)
            ]
        )
        self.feed_forward = factory.feed_forward(layer)

    def forward(self, x, previous, self_mask, self_log_mask, position, contexts, context_masks):
        """
        Forward pass through one decoder layer.

        Args:
            x: Decoder input, shape (beam, batch, tgt_len, d_model)
            previous: LayerState of this layer from the previous step, or None
            self_mask: Multiplicative self mask (for average attention)
            self_log_mask: Additive self mask (for self-attention)
            position: Number of target positions already processed
            contexts: Encoder contexts, each (1, batch, src_len, d_model)
            context_masks: Additive encoder masks, each (batch, 1, 1, src_len)

        Returns:
            tuple: (output, LayerState)
        """
        if self.self_attn is not None:
            values = x
            if position > 0:
                values = torch.cat([previous.output, x], dim=-2)
            # TODO: cache projected keys/values instead of recomputing them every step
            x = self.self_attn(x, [values], [values], [self_log_mask])
            cache = values
        else:
            history = previous.output if position > 0 else None
            x, cache = self.average_attn(x, self_mask, history, position)

        for attn, context, mask in zip(self.src_attn, contexts, context_masks):
            x = attn(x, [context], [context], [mask])

        return self.feed_forward(x), LayerState(cache)


class DecoderTransformer(nn.Module):
    """
    Decoder producing vocabulary logits one state at a time.

    Args:
        options: TransformerOptions
        registry: ParameterRegistry of the model
        batch_index: Which sub-batch holds the target stream (default: last)
        num_encoders: Number of encoders whose states are attended
        scope: Parameter scope
        vectors: Optional pretrained embedding matrix (vocab, dim_emb)
    """

    def __init__(self, options, registry, batch_index=-1, num_encoders=1, scope="decoder", vectors=None):
        super(DecoderTransformer, self).__init__()
        autoreg = options.transformer_decoder_autoreg
        if autoreg not in AUTOREGRESSIVE_LAYERS:
            raise ConfigurationError(
                f"Unknown auto-regressive layer type in transformer decoder '{autoreg}'"
            )
        self.options = options
        self.registry = registry
        self.batch_index = batch_index
        self.num_encoders = num_encoders
        self.scope = scope

        factory = SublayerFactory(options, registry, scope)
        vocab = options.vocab_size(batch_index)
        shared = options.tied_embeddings_src or options.tied_embeddings_all
        emb_key = embedding_key(scope, shared)
        self.embeddings = Embeddings(
            registry,
            emb_key,
            vocab,
            options.dim_emb,
            fixed=options.embedding_fix_trg,
            vectors=vectors,
            normalize=options.embedding_normalization,
        )
        self.emb_process = factory.embedding_processing()
        self.layers = nn.ModuleList(
            [
                DecoderLayer(factory, i, autoreg, num_encoders)
                for i in range(1, options.dec_depth + 1)
            ]
        )

        tie = options.tied_embeddings or options.tied_embeddings_all
        self.generator = Generator(
            registry,
            ParamKey(scope, sublayer="ff_logit_out"),
            options.dim_emb,
            vocab,
            tie_to=emb_key if tie else None,
        )
        logger.debug(
            "Built %s with %d %s layers, %d encoder(s), vocab %d",
            scope, options.dec_depth, autoreg, num_encoders, vocab,
        )

    def set_shortlist(self, indices):
        """Restrict logits to a subset of the target vocabulary."""
        self.generator.set_shortlist(indices)

    def start_state(self, batch, encoder_states):
        """
        Initial decoder state: no layer caches, position 0, no logits.

        Args:
            batch: CorpusBatch being decoded
            encoder_states: Sequence of EncoderState, one per encoder
        """
        encoder_states = tuple(encoder_states)
        if len(encoder_states) != self.num_encoders:
            raise ValueError(
                f"Decoder expects {self.num_encoders} encoder state(s), got {len(encoder_states)}"
            )
        return DecoderState(
            states=(),
            logits=None,
            encoder_states=encoder_states,
            batch=batch,
            position=0,
            registry=self.registry,
        )

    def targets_from_batch(self, state):
        """Decoder input for scoring a reference target: target ids without the last token."""
        sub = state.batch[self.batch_index]
        return state.with_targets(sub.ids[:, :-1], sub.mask[:, :-1])

    def select(self, state, hyp_indices, beam_size):
        """Keep only the selected hypotheses (see DecoderState.select)."""
        return state.select(hyp_indices, beam_size)

    def step(self, state):
        """
        Advance the decoder by one step.

        Args:
            state: DecoderState whose ``targets`` hold the token ids to consume,
                   shape (batch, tgt_len) or (beam, batch, tgt_len)

        Returns:
            New DecoderState at ``position + 1`` with updated layer caches and
            logits of shape (beam, batch, tgt_len, vocab)
        """
        if state.registry is not self.registry:
            raise ConfigurationError("An inconsistent graph parameter was passed to step()")
        if state.targets is None:
            raise ValueError("Decoder state has no target tokens to consume")
        position = state.position
        if position > 0 and len(state.states) != len(self.layers):
            raise ValueError(
                f"Decoder state holds {len(state.states)} layer caches, expected {len(self.layers)}"
            )

        embeddings = self.embeddings(state.targets)
        embeddings = word_dropout(embeddings, self.options.dropout_trg, self.training)

        # according to the paper embeddings are scaled by sqrt(d_model);
        # positions continue from the number of tokens already decoded
        dim_emb = embeddings.size(-1)
        query = add_positions(embeddings * math.sqrt(dim_emb), position)
        query = self.emb_process(atleast_4d(query))  # (beam, batch, tgt_len, d_model)

        dim_batch, dim_trg = query.size(1), query.size(2)
        self_mask = causal_mask(dim_trg, device=query.device)
        if state.target_mask is not None:
            target_mask = atleast_4d(state.target_mask.float())
            target_mask = target_mask.reshape(-1, dim_batch, 1, dim_trg)  # (beam, batch, 1, tgt_len)
            self_mask = self_mask * target_mask
        self_log_mask = to_additive_mask(self_mask)

        contexts, context_masks = [], []
        for encoder_state in state.encoder_states:
            contexts.append(encoder_state.context.unsqueeze(0))
            mask = encoder_state.mask.reshape(1, dim_batch, 1, -1)
            context_masks.append(to_additive_mask(mask))

        layer_states = []
        for i, layer in enumerate(self.layers):
            previous = state.states[i] if state.states else None
            query, layer_state = layer(
                query, previous, self_mask, self_log_mask, position, contexts, context_masks
            )
            layer_states.append(layer_state)

        # unnormalized scores
        logits = self.generator(query)

        return replace(
            state,
            states=tuple(layer_states),
            logits=logits,
            position=position + 1,
            targets=None,
            target_mask=None,
        )

    def forward(self, state):
        return self.step(state)
