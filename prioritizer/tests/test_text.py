"""Tests for keyword extraction and Jaccard similarity."""
from __future__ import annotations

import pytest

from prioritizer.text import extract_keywords, joined_keywords, normalize, similarity


class TestNormalize:
    def test_lowercases_and_strips_punctuation(self):
        assert normalize("Add SSO-login, please!") == "add sso login please"

    def test_collapses_whitespace(self):
        assert normalize("  many   spaces\n\there ") == "many spaces here"

    def test_none_and_empty(self):
        assert normalize(None) == ""
        assert normalize("") == ""


class TestExtractKeywords:
    def test_drops_stopwords_and_short_words(self):
        assert extract_keywords("Add SSO login support for the app") == {"sso", "login", "app"}

    def test_returns_a_set(self):
        assert extract_keywords("export export export") == {"export"}

    def test_empty(self):
        assert extract_keywords(None) == set()
        assert extract_keywords("a an the to") == set()

    def test_joined_keywords(self):
        assert joined_keywords("Webhook retries", None, "exponential backoff") == {
            "webhook", "retries", "exponential", "backoff",
        }


class TestSimilarity:
    def test_identity(self):
        kw = {"sso", "saml", "okta"}
        assert similarity(kw, kw) == 1.0

    def test_symmetric(self):
        a, b = {"sso", "login"}, {"sso", "saml", "based"}
        assert similarity(a, b) == similarity(b, a) == pytest.approx(0.25)

    def test_empty_side_is_zero(self):
        assert similarity({"sso"}, set()) == 0.0
        assert similarity(set(), set()) == 0.0

    def test_disjoint_is_zero(self):
        assert similarity({"voice"}, {"chat"}) == 0.0
