"""Quote-to-offset resolution."""

from continuity_engine.schemas import Span
from continuity_engine.spans import find_case_insensitive_span, find_exact_span, resolve_span


def test_exact_match():
    assert resolve_span("Mara's eyes were green.", "eyes were green") == Span(7, 22)


def test_case_insensitive_fallback():
    text = "Mara's eyes were green."
    assert find_exact_span(text, "EYES WERE GREEN") is None
    assert resolve_span(text, "EYES WERE GREEN") == Span(7, 22)


def test_whitespace_tolerant_fallback():
    text = "her eyes\n   were green"
    assert find_case_insensitive_span(text, "eyes were green") is None
    span = resolve_span(text, "eyes were green")
    assert span == Span(4, len(text))


def test_blank_or_missing_quote():
    assert resolve_span("anything", "") is None
    assert resolve_span("anything", "   \n") is None
    assert resolve_span("anything", "nowhere") is None


def test_first_occurrence_wins():
    text = "storm, then storm again"
    assert resolve_span(text, "storm") == Span(0, 5)
