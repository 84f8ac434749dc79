"""
tests/test_classifier.py — Content Classifier & Text Helper Tests
==================================================================
"""

from __future__ import annotations

import pytest

from mahber.config import ModerationConfig
from mahber.engine.classifier import ClassifierRules, classify, spam_flag
from mahber.engine.text import (
    EMAIL_PLACEHOLDER,
    LINK_PLACEHOLDER,
    content_prefix,
    extract_keywords,
    find_links,
    normalize,
    sanitize,
)

SPAM_POST = "Buy now! Click here! Free money!! Visit www.x.com www.y.com"


class TestClassify:
    def test_clean_text_scores_zero(self):
        result = classify("Peace be with you, brothers and sisters.")
        assert result.score == 0
        assert result.flags == ()

    def test_spam_post_flags(self):
        result = classify(SPAM_POST)
        assert {"spam_buy_now", "spam_click_here", "multi_url"} <= set(result.flags)
        # three phrases, two links, one "!!" run
        assert result.score == 15 * 3 + 15 + 5

    def test_spam_phrase_is_word_bounded(self):
        result = classify("The insurgents in the story were later forgiven by the king.")
        assert result.score == 0
        assert result.flags == ()
        assert "spam_guaranteed" not in classify("An unguaranteed promise is still a promise.").flags

    def test_spam_phrase_matches_whole_word(self):
        result = classify("URGENT: the choir practice moved to Saturday")
        assert "spam_urgent" in result.flags

    def test_deterministic(self):
        assert classify(SPAM_POST) == classify(SPAM_POST)

    def test_single_link_is_not_multi_url(self):
        result = classify("Our chapter schedule is at https://example.org/schedule today")
        assert "multi_url" not in result.flags

    def test_repeated_link_counts_once(self):
        result = classify("See www.a.org and again www.a.org for the reading list")
        assert "multi_url" not in result.flags

    def test_profanity_is_word_bounded(self):
        assert "abusive_language" in classify("You are such an idiot, honestly").flags
        assert "abusive_language" not in classify("Idiomatic expressions in Ge'ez").flags

    def test_each_profanity_adds_weight(self):
        result = classify("shut up you stupid loser, okay")
        assert result.flags.count("abusive_language") == 1
        assert result.score >= 30

    def test_excessive_caps(self):
        result = classify("PLEASE EVERYONE READ THIS MESSAGE NOW")
        assert "excessive_caps" in result.flags

    def test_short_caps_not_flagged(self):
        assert "excessive_caps" not in classify("AMEN TO THAT").flags

    def test_character_repetition(self):
        assert "char_repetition" in classify("Soooooo happy to be here today").flags

    def test_punctuation_runs_add_per_run(self):
        one = classify("Is anyone coming?? I hope so.")
        two = classify("Is anyone coming?? Really!! I hope so.")
        assert two.score - one.score == 5

    def test_too_short(self):
        assert "too_short" in classify("hi").flags

    def test_too_long(self):
        assert "too_long" in classify("word " * 500).flags

    @pytest.mark.parametrize(
        ("text", "flag"),
        [
            ("Write to me at abebe@example.org please", "pii_email"),
            ("Call my number 251911234567 after service", "pii_digits"),
        ],
    )
    def test_pii(self, text, flag):
        result = classify(text)
        assert flag in result.flags
        assert result.score == 15

    def test_score_is_clamped(self):
        text = " ".join(ModerationConfig().spam_keywords) + " www.a.com www.b.com!!!! ??"
        assert classify(text).score == 100

    def test_rules_from_config(self):
        rules = ClassifierRules.from_config(ModerationConfig(spam_keywords=("bingo night",)))
        result = classify("Come to bingo night at the hall", rules)
        assert result.flags == ("spam_bingo_night",)

    def test_has_any(self):
        assert classify(SPAM_POST).has_any(frozenset({"multi_url"}))
        assert not classify("Peace be with you.").has_any(frozenset({"multi_url"}))


class TestSpamFlag:
    def test_phrase_to_flag(self):
        assert spam_flag("buy now") == "spam_buy_now"
        assert spam_flag("  Limited Offer ") == "spam_limited_offer"


class TestTextHelpers:
    def test_find_links_distinct_and_trimmed(self):
        text = "Go to www.x.com, then https://y.org/page. Also WWW.X.COM!"
        assert find_links(text) == ["www.x.com", "https://y.org/page"]

    def test_sanitize_strips_links_and_emails(self):
        cleaned = sanitize("  Visit   www.x.com or mail me@x.org  ")
        assert cleaned == f"Visit {LINK_PLACEHOLDER} or mail {EMAIL_PLACEHOLDER}"

    def test_normalize(self):
        assert normalize("  Peace, be WITH you!  ") == "peace be with you"

    def test_content_prefix(self):
        assert content_prefix("Hello, World! How are you today?", 10) == "hello worl"

    def test_extract_keywords(self):
        text = "Fasting fasting prayer with the community, prayer and fasting."
        assert extract_keywords(text) == ["fasting", "prayer", "community"]

    def test_extract_keywords_limit(self):
        text = " ".join(f"word{i}" for i in range(20))
        assert len(extract_keywords(text, 10)) == 10
