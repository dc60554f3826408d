"""
Model options for the encoder-decoder Transformer.

Options form a flat namespace consumed by key. Keys may be written the
marian way (``transformer-heads``) or as Python attribute names
(``transformer_heads``); both resolve to the same field.

Options can come from a Python config file made of top-level assignments
(see ``config/transformer_base.py``), from a dict, or from keyword overrides.
"""

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised for invalid model configuration (unknown op, activation, ...)."""


def _normalize_key(key):
    return key.replace("-", "_")


@dataclass(frozen=True)
class TransformerOptions:
    """
    Flat option set for building encoder and decoder stacks.

    Defaults follow the base model of "Attention is All You Need"
    (N=6, d_model=512, d_ff=2048, h=8).
    """

    # Dimensions
    dim_emb: int = 512                      # model width (d_model, n_embd)
    dim_vocabs: Tuple[int, ...] = field(default_factory=lambda: (32000, 32000))
    enc_depth: int = 6                      # N for the encoder
    dec_depth: int = 6                      # N for the decoder
    transformer_heads: int = 8              # h, n_head

    # Feed-forward sublayer
    transformer_dim_ffn: int = 2048         # d_ff
    transformer_ffn_depth: int = 2
    transformer_ffn_activation: str = "relu"

    # Average-attention sublayer
    transformer_decoder_autoreg: str = "self-attention"
    transformer_dim_aan: int = 2048
    transformer_aan_depth: int = 2
    transformer_aan_activation: str = "relu"
    transformer_aan_nogate: bool = False

    # Dropout
    transformer_dropout: float = 0.1
    transformer_dropout_attention: float = 0.0
    transformer_dropout_ffn: float = 0.0
    dropout_src: float = 0.0
    dropout_trg: float = 0.0

    # Sublayer processing
    transformer_preprocess: str = ""
    transformer_postprocess: str = "dan"
    transformer_postprocess_emb: str = "d"
    transformer_no_projection: bool = False

    # Embeddings
    tied_embeddings: bool = False
    tied_embeddings_src: bool = False
    tied_embeddings_all: bool = False
    embedding_fix_src: bool = False
    embedding_fix_trg: bool = False
    embedding_normalization: bool = False

    def __post_init__(self):
        # keep the options hashable when built directly from a list
        object.__setattr__(self, "dim_vocabs", tuple(self.dim_vocabs))

    def get(self, key):
        """Look up an option by its marian-style or attribute name."""
        name = _normalize_key(key)
        if name not in self.keys():
            raise ConfigurationError(f"Unknown option '{key}'")
        return getattr(self, name)

    def has(self, key):
        return _normalize_key(key) in self.keys()

    @classmethod
    def keys(cls):
        return {f.name for f in fields(cls)}

    def with_overrides(self, **overrides):
        """Return a copy with the given options replaced."""
        return replace(self, **self._validated(overrides))

    @classmethod
    def from_dict(cls, values):
        return cls().with_overrides(**values)

    @classmethod
    def from_file(cls, path, **overrides):
        """
        Load options from a Python config file.

        The file is executed and every top-level name matching an option is
        picked up; everything else (imports, helpers, comments) is ignored.

        Args:
            path: Path to the config file
            **overrides: Options applied on top of the file

        Returns:
            TransformerOptions instance
        """
        print(f"Loading config from {path}")
        namespace = {}
        with open(path) as f:
            exec(f.read(), namespace)
        known = cls.keys()
        values = {k: v for k, v in namespace.items() if _normalize_key(k) in known}
        values.update(overrides)
        return cls.from_dict(values)

    @classmethod
    def _validated(cls, values):
        known = cls.keys()
        result = {}
        for key, value in values.items():
            name = _normalize_key(key)
            if name not in known:
                raise ConfigurationError(f"Unknown option '{key}'")
            if name == "dim_vocabs":
                value = tuple(value)
            result[name] = value
        return result

    def vocab_size(self, index):
        """Vocabulary size of sub-batch ``index`` (negative indices allowed)."""
        return self.dim_vocabs[index]


def resolve_options(options: Optional[TransformerOptions] = None, **overrides):
    """Build options from an optional base plus keyword overrides."""
    if options is None:
        options = TransformerOptions()
    if overrides:
        options = options.with_overrides(**overrides)
    logger.debug("Resolved options: %s", options)
    return options
