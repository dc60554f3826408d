"""
Decoding strategies for sequence generation.

Provides:
- greedy_decode: Simple greedy decoding
- beam_search: Beam search decoding (more sophisticated)

Both decode incrementally: the decoder state carries the per-layer history,
so each step only feeds the most recent token of every hypothesis.
"""

import torch
from torch.nn.functional import log_softmax


def _vocab_ids(model, indices):
    """Map positions in the (possibly shortlisted) logits back to vocabulary ids."""
    shortlist = model.decoder.generator.shortlist
    if shortlist is None:
        return indices
    return shortlist.to(indices.device)[indices]


def greedy_decode(model, batch, max_len, start_symbol):
    """
    Greedy decoding for sequence generation.

    At each step, selects the token with highest score.
    Simple but may not find the globally optimal sequence.

    Args:
        model: EncoderDecoder model
        batch: CorpusBatch with the source stream(s)
        max_len: Maximum output sequence length
        start_symbol: Start token index (typically <s> or <bos>)

    Returns:
        Generated sequences, shape (batch, max_len)

    Example:
        >>> model.eval()
        >>> batch = CorpusBatch.from_ids(torch.LongTensor([[1, 2, 3, 4, 5]]))
        >>> output = greedy_decode(model, batch, max_len=10, start_symbol=1)
    """
    state = model.start_state(batch)

    ys = torch.full((batch.size(), 1), start_symbol, dtype=torch.long, device=batch.device)

    for _ in range(max_len - 1):
        state = model.step(state.with_targets(ys[:, -1:]))

        # Select token with highest score for the newest position
        next_word = _vocab_ids(model, state.logits[0, :, -1].argmax(dim=-1))

        ys = torch.cat([ys, next_word.unsqueeze(1)], dim=1)

    return ys


def beam_search(
    model,
    batch,
    max_len,
    start_symbol,
    end_symbol,
    beam_size=4,
    length_penalty=0.6,
):
    """
    Beam search decoding for sequence generation.

    Maintains multiple hypothesis sequences and selects the best one.
    After every step the decoder state is narrowed to the surviving
    hypotheses with ``model.select``.

    Args:
        model: EncoderDecoder model
        batch: CorpusBatch holding a single sentence
        max_len: Maximum output sequence length
        start_symbol: Start token index
        end_symbol: End token index (for early stopping)
        beam_size: Number of beams to maintain (default: 4)
        length_penalty: Penalty factor for sequence length (default: 0.6)
                       Higher values favor longer sequences.

    Returns:
        Best generated sequence, shape (1, output_len)
    """
    if batch.size() != 1:
        raise ValueError(f"beam_search decodes one sentence at a time, got {batch.size()}")
    device = batch.device

    def score_with_penalty(item):
        score, seq = item[0], item[1]
        return score / (len(seq) ** length_penalty)

    state = model.start_state(batch)

    # Active hypotheses: (score, sequence)
    beams = [(0.0, [start_symbol])]
    completed = []

    for _ in range(max_len - 1):
        last = torch.tensor([seq[-1] for _, seq in beams], dtype=torch.long, device=device)
        state = model.step(state.with_targets(last.view(-1, 1, 1)))  # (beam, batch=1, len=1)

        log_probs = log_softmax(state.logits[:, 0, -1], dim=-1)  # (beam, vocab)
        k = min(beam_size, log_probs.size(-1))

        all_candidates = []
        for origin, (score, seq) in enumerate(beams):
            top_log_probs, top_indices = torch.topk(log_probs[origin], k)
            top_indices = _vocab_ids(model, top_indices)
            for log_prob, idx in zip(top_log_probs.tolist(), top_indices.tolist()):
                all_candidates.append((score + log_prob, seq + [idx], origin))

        all_candidates.sort(key=score_with_penalty, reverse=True)

        beams, origins = [], []
        for score, seq, origin in all_candidates[:beam_size]:
            if seq[-1] == end_symbol:
                completed.append((score, seq))
            else:
                beams.append((score, seq))
                origins.append(origin)

        # Early stopping if all beams are complete
        if not beams:
            break

        state = model.select(state, origins, beam_size=len(origins))

    # Add remaining beams to completed
    completed.extend(beams)
    completed.sort(key=score_with_penalty, reverse=True)
    best_seq = completed[0][1]

    return torch.LongTensor([best_seq]).to(device)
