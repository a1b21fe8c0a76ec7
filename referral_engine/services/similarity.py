"""
Caption Similarity - Near-duplicate detection for referral captions.

Scores are normalized to [0, 1]; 1.0 means identical after case folding
and whitespace trimming.
"""

from collections.abc import Callable, Iterable

from rapidfuzz import fuzz

CaptionScorer = Callable[[str, str], float]


def caption_similarity(a: str, b: str) -> float:
    """Normalized Indel similarity of two captions."""
    left = a.lower().strip()
    right = b.lower().strip()
    if not left and not right:
        return 1.0
    return fuzz.ratio(left, right) / 100


def find_similar_caption(
    caption: str,
    previous: Iterable[str | None],
    threshold: float,
    scorer: CaptionScorer = caption_similarity,
) -> float | None:
    """
    Return the first score strictly above threshold, or None.

    Empty and missing captions are never compared.
    """
    if not caption or not caption.strip():
        return None
    for other in previous:
        if not other or not other.strip():
            continue
        score = scorer(caption, other)
        if score > threshold:
            return score
    return None
