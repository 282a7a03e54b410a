from __future__ import annotations

from edugov.services.moderation.ai_review import priority_for_score, score_content


def test_aligned_content_scores_without_flags() -> None:
    result = score_content("Prayer and fasting prepare us for the liturgy and the eucharist.")
    assert result.score == 4
    assert result.flags == []
    assert result.is_aligned
    assert not result.needs_review


def test_sensitive_topics_and_phrases_become_flags() -> None:
    result = score_content("What about the political debate on divorce versus tradition?")
    assert "sensitive_topic_political" in result.flags
    assert "sensitive_topic_divorce" in result.flags
    assert "problematic_phrase_what_about" in result.flags
    assert "problematic_phrase_versus" in result.flags
    assert result.needs_review


def test_whole_word_matching() -> None:
    # "toward" must not match "war"; "loved" must not match "love".
    result = score_content("We walked toward the church and loved every moment of it.")
    assert result.flags == []
    assert result.score == 0
    assert result.needs_review


def test_short_and_off_topic_content() -> None:
    assert "too_short" in score_content("hello there").flags
    result = score_content("Why and how and when did the game start, and who won?")
    assert "potentially_off_topic" in result.flags


def test_priority_thresholds() -> None:
    assert priority_for_score(7) == "high"
    assert priority_for_score(5) == "high"
    assert priority_for_score(2) == "medium"
    assert priority_for_score(0) == "low"
