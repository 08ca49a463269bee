from companion_chat.similarity import is_repetitive, overlap_ratio


def test_empty_candidate_is_never_repetitive():
    assert is_repetitive("", "anything at all") is False
    assert is_repetitive("", "") is False


def test_identical_text_is_repetitive():
    assert is_repetitive("the cat sat", "the cat sat") is True


def test_disjoint_text_is_not_repetitive():
    assert overlap_ratio("red green blue", "one two three") == 0.0
    assert is_repetitive("red green blue", "one two three") is False


def test_case_and_whitespace_are_ignored():
    assert is_repetitive("The  CAT\tsat", "the cat sat") is True


def test_counts_respect_multiplicity():
    # "the" appears twice on one side only once on the other: 2 shared of 4.
    assert overlap_ratio("the the cat dog", "the cat") == 0.5
    assert is_repetitive("the the cat dog", "the cat") is False


def test_threshold_is_strictly_greater_than():
    # 3 shared tokens out of 5 is exactly 0.6, which does not count.
    assert overlap_ratio("a b c d e", "a b c x y") == 0.6
    assert is_repetitive("a b c d e", "a b c x y") is False
    assert is_repetitive("a b c d e", "a b c d y") is True


def test_whitespace_only_candidate_is_not_repetitive():
    assert is_repetitive("   ", "") is False
