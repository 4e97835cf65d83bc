"""
Unit tests for name similarity and normalization
"""

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from similarity import similarity, levenshtein_distance
from ownership import normalize_name


class TestSimilarity:
    """Tests for normalized edit-distance similarity"""

    def test_identical_strings(self):
        assert similarity("Huawei", "Huawei") == 1.0

    def test_case_insensitive(self):
        assert similarity("HUAWEI", "huawei") == 1.0

    def test_empty_strings_are_identical(self):
        assert similarity("", "") == 1.0

    def test_one_empty_string(self):
        assert similarity("", "abc") == 0.0

    def test_symmetric(self):
        assert similarity("ZTE USA", "ZTE Corp") == similarity("ZTE Corp", "ZTE USA")

    def test_bounded(self):
        for a, b in [("abc", "xyz"), ("Huawei", "Huawei Device"), ("a", "abcdefgh")]:
            assert 0.0 <= similarity(a, b) <= 1.0

    def test_known_value(self):
        # kitten -> sitting: distance 3 over 7 characters
        assert levenshtein_distance("kitten", "sitting") == 3
        assert similarity("kitten", "sitting") == pytest.approx(4 / 7)

    def test_none_treated_as_empty(self):
        assert similarity(None, None) == 1.0


class TestNormalizeName:
    """Tests for company name normalization"""

    def test_strips_legal_suffix(self):
        assert normalize_name("ZTE Corporation") == "zte"

    def test_strips_repeated_legal_suffixes(self):
        assert normalize_name("Huawei Technologies Co., Ltd.") == "huawei technologies"

    def test_trims_and_collapses_whitespace(self):
        assert normalize_name("  Acme    Widgets   Inc ") == "acme widgets"

    def test_removes_accents(self):
        assert normalize_name("Société Générale SA") == "societe generale"

    def test_only_legal_tokens_kept(self):
        assert normalize_name("Company Limited") == "company limited"

    def test_empty_and_none(self):
        assert normalize_name("") == ""
        assert normalize_name(None) == ""

    def test_suffix_only_removed_at_end(self):
        assert normalize_name("Inc Holdings") == "inc holdings"
