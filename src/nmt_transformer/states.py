"""
Encoder and decoder states.

States are immutable: every decoder step and every beam re-selection returns a
new ``DecoderState``. Encoder states are shared read-only by all steps and all
hypotheses.
"""

from dataclasses import dataclass, replace
from typing import Any, Optional, Tuple

import torch


@dataclass(frozen=True)
class EncoderState:
    """
    Output of one encoder.

    Attributes:
        context: Encoded source, shape (batch, src_len, d_model)
        mask: Source padding mask, shape (batch, src_len)
        batch: The CorpusBatch the context was computed from
    """

    context: torch.Tensor
    mask: torch.Tensor
    batch: Any


@dataclass(frozen=True)
class LayerState:
    """
    Cache of one decoder layer, shape (beam, batch, time, d_model).

    For self-attention layers this is the history of layer inputs, for
    average-attention layers the running average.
    """

    output: torch.Tensor


@dataclass(frozen=True)
class DecoderState:
    """
    Decoder state threaded through ``DecoderTransformer.step``.

    Attributes:
        states: One LayerState per decoder layer (empty before the first step)
        logits: Vocabulary scores of the last step, shape (beam, batch, len, vocab)
        encoder_states: Outputs of all encoders
        batch: The CorpusBatch being decoded
        position: Number of target positions already processed
        targets: Token ids consumed by the next step, (batch, len) or (beam, batch, len)
        target_mask: Optional padding mask matching ``targets``
        registry: ParameterRegistry of the decoder that created the state
    """

    states: Tuple[LayerState, ...]
    logits: Optional[torch.Tensor]
    encoder_states: Tuple[EncoderState, ...]
    batch: Any
    position: int = 0
    targets: Optional[torch.Tensor] = None
    target_mask: Optional[torch.Tensor] = None
    registry: Any = None

    def with_targets(self, targets, target_mask=None):
        """Return a copy that will consume ``targets`` on the next step."""
        return replace(self, targets=targets, target_mask=target_mask)

    def select(self, hyp_indices, beam_size):
        """
        Keep only the selected hypotheses.

        Each cache of shape (beam, batch, time, d_model) is flattened to rows of
        shape (beam * batch * time, d_model); for every selected hypothesis i
        the rows i * time + j (j < time) are gathered in order and the result
        is reshaped to (beam_size, len(hyp_indices) // beam_size, time, d_model).

        Args:
            hyp_indices: Indices into the flattened (beam * batch) hypotheses
            beam_size: Beam width of the derived state

        Returns:
            New DecoderState at the same position
        """
        hyp_indices = [int(i) for i in hyp_indices]
        if beam_size < 1 or len(hyp_indices) % beam_size:
            raise ValueError(
                f"Cannot split {len(hyp_indices)} hypotheses into beams of size {beam_size}"
            )
        dim_batch = len(hyp_indices) // beam_size

        selected = []
        for state in self.states:
            output = state.output
            dim_time, dim_depth = output.size(-2), output.size(-1)
            index = torch.tensor(hyp_indices, dtype=torch.long, device=output.device)
            rows = (index.unsqueeze(1) * dim_time + torch.arange(dim_time, device=output.device)).reshape(-1)
            sel = output.reshape(-1, dim_depth).index_select(0, rows)
            selected.append(LayerState(sel.reshape(beam_size, dim_batch, dim_time, dim_depth)))

        return replace(self, states=tuple(selected), targets=None, target_mask=None)
