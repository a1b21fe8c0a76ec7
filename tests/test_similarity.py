"""
Tests for caption near-duplicate detection.
"""

from referral_engine.services.similarity import caption_similarity, find_similar_caption


class TestCaptionSimilarity:
    """Tests for caption_similarity."""

    def test_identical_ignoring_case_and_whitespace(self) -> None:
        assert caption_similarity("  Loving @EngageKit_io ", "loving @engagekit_io") == 1.0

    def test_both_empty(self) -> None:
        assert caption_similarity("", "   ") == 1.0

    def test_unrelated_captions_score_low(self) -> None:
        score = caption_similarity(
            "Our quarterly numbers are in, thanks @engagekit_io",
            "zzzz",
        )
        assert 0.0 <= score < 0.5

    def test_single_edit_scores_high(self) -> None:
        a = "Scheduling all our posts with @engagekit_io this week, highly recommend it"
        b = "Scheduling all our posts with @engagekit_io this week, highly recommend it!"
        assert caption_similarity(a, b) > 0.95


class TestFindSimilarCaption:
    """Tests for find_similar_caption."""

    def test_returns_first_score_above_threshold(self) -> None:
        score = find_similar_caption(
            "Loving @engagekit_io",
            ["something else entirely", "LOVING @engagekit_io"],
            threshold=0.95,
        )
        assert score == 1.0

    def test_none_when_all_below_threshold(self) -> None:
        assert find_similar_caption("Loving @engagekit_io", ["xyz", "abc"], 0.95) is None

    def test_threshold_is_strict(self) -> None:
        assert find_similar_caption("a", ["b"], 0.95, scorer=lambda _a, _b: 0.95) is None

    def test_skips_missing_and_empty_captions(self) -> None:
        calls: list[tuple[str, str]] = []

        def scorer(a: str, b: str) -> float:
            calls.append((a, b))
            return 0.0

        find_similar_caption("hello", [None, "", "   ", "world"], 0.95, scorer=scorer)
        assert calls == [("hello", "world")]

    def test_empty_caption_never_matches(self) -> None:
        assert find_similar_caption("  ", ["  "], 0.5) is None
