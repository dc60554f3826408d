"""Shared fixtures for the transformer tests."""

import pytest
import torch

from nmt_transformer import CorpusBatch, ParameterRegistry, TransformerOptions, make_model


@pytest.fixture(autouse=True)
def seed():
    torch.manual_seed(0)


@pytest.fixture
def small_options():
    """Tiny model: width 8, 2 heads, one layer per stack, no dropout."""
    return TransformerOptions(
        dim_emb=8,
        enc_depth=1,
        dec_depth=1,
        transformer_heads=2,
        transformer_dim_ffn=16,
        transformer_dim_aan=16,
        dim_vocabs=[11, 13],
        transformer_dropout=0.0,
    )


@pytest.fixture
def registry():
    return ParameterRegistry()


@pytest.fixture
def model(small_options):
    model = make_model(small_options)
    model.eval()
    return model


@pytest.fixture
def batch():
    """Two sentences; the first source is padded with index 0."""
    src = torch.tensor([[3, 4, 5, 0, 0], [3, 4, 5, 6, 7]])
    tgt = torch.tensor([[1, 2, 3, 4], [1, 5, 6, 7]])
    return CorpusBatch.from_ids(src, tgt, pad=0)


@pytest.fixture
def copy_batches():
    """Factory for random src-tgt copy-task batches; the first token is always 1."""

    def generate(vocab, batch_size, nbatches, length=10):
        for _ in range(nbatches):
            data = torch.randint(1, vocab, size=(batch_size, length))
            data[:, 0] = 1
            yield CorpusBatch.from_ids(data.clone(), data.clone(), pad=0)

    return generate
