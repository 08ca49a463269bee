"""Word-overlap scoring used to flag prompts that echo earlier turns."""

from __future__ import annotations

from collections import Counter
from typing import List

REPETITION_THRESHOLD = 0.6


def _tokens(text: str) -> List[str]:
    return [token for token in text.lower().split() if token]


def overlap_ratio(candidate: str, reference: str) -> float:
    """Return shared token count over the longer token list, multiplicity aware."""
    candidate_tokens = _tokens(candidate)
    reference_tokens = _tokens(reference)
    longest = max(len(candidate_tokens), len(reference_tokens))
    if longest == 0:
        return 0.0

    candidate_counts = Counter(candidate_tokens)
    reference_counts = Counter(reference_tokens)
    common = sum(
        min(count, reference_counts[token])
        for token, count in candidate_counts.items()
        if token in reference_counts
    )
    return common / longest


def is_repetitive(candidate: str, reference: str) -> bool:
    if not candidate:
        return False
    return overlap_ratio(candidate, reference) > REPETITION_THRESHOLD
