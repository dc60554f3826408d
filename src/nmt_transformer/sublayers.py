"""
Sublayer construction shared by the encoder and the decoder.

Both stacks hold a ``SublayerFactory`` and ask it for their sublayers instead
of inheriting from a common Transformer base class. The factory reads the
relevant options and places every parameter under
``ParamKey(scope, layer, sublayer, role)``.
"""

from .attention import AttentionSublayer
from .average_attention import AverageAttention
from .feedforward import PositionwiseFeedForward
from .layers import PrePostProcess
from .params import ParamKey


class SublayerFactory:
    """
    Build sublayers of one stack from options.

    Args:
        options: TransformerOptions
        registry: ParameterRegistry of the model
        scope: Name of the stack ("encoder", "decoder")
    """

    def __init__(self, options, registry, scope):
        self.options = options
        self.registry = registry
        self.scope = scope

    @property
    def d_model(self):
        return self.options.dim_emb

    def key(self, layer=None, sublayer=None):
        return ParamKey(self.scope, layer, sublayer)

    def embedding_processing(self):
        """Processing applied to scaled embeddings before the first layer."""
        opts = self.options
        return PrePostProcess(
            self.registry,
            self.key(sublayer="emb"),
            opts.transformer_postprocess_emb,
            self.d_model,
            opts.transformer_dropout,
        )

    def attention(self, layer, sublayer, num_sources=1):
        opts = self.options
        return AttentionSublayer(
            self.registry,
            self.key(layer, sublayer),
            self.d_model,
            opts.transformer_heads,
            num_sources=num_sources,
            dropout=opts.transformer_dropout,
            attention_dropout=opts.transformer_dropout_attention,
            preprocess=opts.transformer_preprocess,
            postprocess=opts.transformer_postprocess,
            no_projection=opts.transformer_no_projection,
        )

    def feed_forward(self, layer):
        opts = self.options
        return PositionwiseFeedForward(
            self.registry,
            self.key(layer, "ffn"),
            self.d_model,
            opts.transformer_dim_ffn,
            depth=opts.transformer_ffn_depth,
            activation=opts.transformer_ffn_activation,
            dropout=opts.transformer_dropout,
            ffn_dropout=opts.transformer_dropout_ffn,
            preprocess=opts.transformer_preprocess,
            postprocess=opts.transformer_postprocess,
        )

    def average_attention(self, layer):
        opts = self.options
        return AverageAttention(
            self.registry,
            self.key(layer, "aan"),
            self.d_model,
            opts.transformer_dim_aan,
            depth=opts.transformer_aan_depth,
            activation=opts.transformer_aan_activation,
            dropout=opts.transformer_dropout,
            ffn_dropout=opts.transformer_dropout_ffn,
            gate=not opts.transformer_aan_nogate,
            preprocess=opts.transformer_preprocess,
            postprocess=opts.transformer_postprocess,
        )
