# Transformer with an Average Attention Network decoder
# (Zhang et al., 2018) and pre-norm residual blocks.
#
#   options = TransformerOptions.from_file("config/transformer_aan.py")

dim_emb = 512
enc_depth = 6
dec_depth = 6
transformer_heads = 8
dim_vocabs = [32000, 32000]

transformer_dim_ffn = 2048
transformer_ffn_depth = 2
transformer_ffn_activation = 'swish'

transformer_decoder_autoreg = 'average-attention'
transformer_dim_aan = 2048
transformer_aan_depth = 2
transformer_aan_activation = 'swish'
transformer_aan_nogate = False

transformer_dropout = 0.1

# Pre-norm: normalize before each sublayer, dropout and add after
transformer_preprocess = 'n'
transformer_postprocess = 'da'
transformer_postprocess_emb = 'd'

tied_embeddings = True
