"""Tests for deterministic merchant normalization."""

import pytest

from enrichment.categorize.merchant import UNKNOWN_MERCHANT, clean_merchant, normalize_merchant


class TestNormalizeMerchant:
    @pytest.mark.parametrize("text,expected", [
        ("REWE SAGT DANKE 4711", "REWE SAGT DANKE"),
        ("netflix.com 866-579", "NETFLIX COM 866"),
        ("Spotify", "SPOTIFY"),
        ("  PayPal *Steam   Games ", "PAYPAL STEAM GAMES"),
        ("ALDI_SUED//Filiale", "ALDI SUED FILIALE"),
    ])
    def test_normalizes(self, text, expected):
        assert normalize_merchant(text) == expected

    def test_token_count(self):
        assert normalize_merchant("A B C D E", tokens=2) == "A B"

    def test_zero_tokens_keeps_one(self):
        assert normalize_merchant("A B C", tokens=0) == "A"

    @pytest.mark.parametrize("text", [None, "", "   ", "*** -- ///"])
    def test_unknown_when_nothing_left(self, text):
        assert normalize_merchant(text) == UNKNOWN_MERCHANT

    def test_umlauts_survive(self):
        assert normalize_merchant("Bäckerei Müller GmbH") == "BÄCKEREI MÜLLER GMBH"


class TestCleanMerchant:
    def test_uppercases_and_collapses(self):
        assert clean_merchant("  Netflix   International ") == "NETFLIX INTERNATIONAL"

    def test_blank(self):
        assert clean_merchant("   ") == ""
