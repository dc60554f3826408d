# Base Transformer options for translation
#
# Load with:
#   from nmt_transformer import TransformerOptions
#   options = TransformerOptions.from_file("config/transformer_base.py")
#
# Override single values:
#   TransformerOptions.from_file("config/transformer_base.py", enc_depth=2)

# Model architecture (Annotated Transformer defaults)
# Marian option names with nanoGPT equivalents noted
dim_emb = 512            # n_embd: Model dimension
enc_depth = 6            # n_layer: Number of encoder layers
dec_depth = 6            # n_layer: Number of decoder layers
transformer_heads = 8    # n_head: Number of attention heads
dim_vocabs = [32000, 32000]

# Feed-forward sublayer
transformer_dim_ffn = 2048   # 4 * dim_emb
transformer_ffn_depth = 2
transformer_ffn_activation = 'relu'

# Decoder autoregressive sublayer: 'self-attention' or 'average-attention'
transformer_decoder_autoreg = 'self-attention'

# Dropout
transformer_dropout = 0.1
transformer_dropout_attention = 0.0
transformer_dropout_ffn = 0.0

# Post-norm residual blocks as in the paper: dropout, add, norm
transformer_preprocess = ''
transformer_postprocess = 'dan'
transformer_postprocess_emb = 'd'

# Share source, target and output embeddings (needs a joint vocabulary)
tied_embeddings_all = False


# =============================================================================
# Alternative: Smaller model for quick testing / debugging
# =============================================================================
# Uncomment below for a smaller model

# enc_depth = 2
# dec_depth = 2
# dim_emb = 256
# transformer_dim_ffn = 1024
# transformer_heads = 4
