"""
Batch containers handed to the encoder and decoder.

A ``CorpusBatch`` holds one ``SubBatch`` per stream: one or more source
streams followed by the target stream. Each sub-batch carries token ids and
the matching padding mask.
"""

from .masking import padding_mask


class SubBatch:
    """
    Token ids of one stream with their padding mask.

    Args:
        ids: Token indices, shape (batch, seq_len)
        pad: Padding token index (default: 0)
        mask: Optional explicit mask; derived from ``pad`` otherwise
    """

    def __init__(self, ids, pad=0, mask=None):
        self.ids = ids
        self.pad = pad
        self.mask = padding_mask(ids, pad) if mask is None else mask.float()

    @property
    def batch_size(self):
        return self.ids.size(0)

    @property
    def batch_width(self):
        """Padded sequence length."""
        return self.ids.size(-1)

    @property
    def ntokens(self):
        return int(self.mask.sum().item())

    def to(self, device):
        return SubBatch(self.ids.to(device), self.pad, self.mask.to(device))


class CorpusBatch:
    """
    Object for holding a batch of parallel data.

    Args:
        sub_batches: SubBatch per stream, sources first and target last
    """

    def __init__(self, sub_batches):
        if not sub_batches:
            raise ValueError("A batch needs at least one sub-batch")
        sizes = {sb.batch_size for sb in sub_batches}
        if len(sizes) != 1:
            raise ValueError(f"Sub-batches disagree on batch size: {sorted(sizes)}")
        self.sub_batches = list(sub_batches)

    @classmethod
    def from_ids(cls, *streams, pad=0):
        """Build a batch from id tensors (batch, seq_len) sharing one pad index."""
        return cls([SubBatch(ids, pad) for ids in streams])

    def __getitem__(self, index):
        return self.sub_batches[index]

    def __len__(self):
        return len(self.sub_batches)

    def size(self):
        """Number of sentences."""
        return self.sub_batches[0].batch_size

    @property
    def device(self):
        return self.sub_batches[0].ids.device

    def to(self, device):
        return CorpusBatch([sb.to(device) for sb in self.sub_batches])

