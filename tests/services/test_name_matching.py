# -*- coding: utf-8 -*-
"""
Tests for Arabic name matching and person scoring.
"""

import pytest

from services.name_matching import (
    full_name_similarity, levenshtein, normalize_arabic, normalize_phone, score_persons, similarity,
)


class TestNormalization:
    """Test Arabic text and phone normalization."""

    def test_alef_variants_unified(self):
        """Hamza forms of alef compare equal."""
        assert normalize_arabic("أحمد") == normalize_arabic("احمد")
        assert normalize_arabic("إبراهيم") == normalize_arabic("ابراهيم")

    def test_taa_marbuta_and_alef_maksura(self):
        assert normalize_arabic("فاطمة") == normalize_arabic("فاطمه")
        assert normalize_arabic("مصطفى") == normalize_arabic("مصطفي")

    def test_diacritics_and_tatweel_removed(self):
        assert normalize_arabic("مُحَمَّد") == "محمد"
        assert normalize_arabic("محـــمد") == "محمد"

    def test_whitespace_collapsed_and_lowercased(self):
        assert normalize_arabic("  Al   Halabi ") == "al halabi"

    def test_empty(self):
        assert normalize_arabic(None) == ""
        assert normalize_arabic("") == ""

    @pytest.mark.parametrize("raw", ["+963 944 123 456", "00963944123456", "0944123456", "944-123-456"])
    def test_syrian_phone_prefixes(self, raw):
        assert normalize_phone(raw) == "944123456"


class TestSimilarity:
    """Test string similarity."""

    def test_levenshtein(self):
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3

    def test_identical_after_normalization(self):
        assert similarity("أحمد", "احمد") == 100.0

    def test_one_edit(self):
        assert similarity("abcd", "abce") == 75.0

    def test_missing_side_scores_zero(self):
        assert similarity("محمد", None) == 0.0

    def test_full_name_weights_renormalized(self):
        """A missing father name is not counted against the pair."""
        a = {"first_name": "محمد", "family_name": "الحلبي"}
        b = {"first_name": "محمد", "father_name": "علي", "family_name": "الحلبي"}
        assert full_name_similarity(a, b) == 100.0


class TestScorePersons:
    """Test the weighted person score."""

    def test_national_id_match_is_100(self):
        score, criteria = score_persons(
            {"national_id": "12345678901", "first_name": "x"},
            {"national_id": "12345678901", "first_name": "y"})
        assert score == 100.0
        assert criteria["national_id"] is True

    def test_blend_of_criteria(self):
        a = {"first_name": "محمد", "father_name": "أحمد", "family_name": "الحلبي",
             "year_of_birth": 1980, "gender": "male", "mobile_number": "0944123456"}
        b = dict(a, mobile_number="+963944123456", gender="M")
        score, criteria = score_persons(a, b)
        # 100 * 0.40 + 30 + 15 + 15
        assert score == 100.0
        assert criteria["phone"] and criteria["year_of_birth"] and criteria["gender"]

    def test_name_only(self):
        a = {"first_name": "محمد", "father_name": "أحمد", "family_name": "الحلبي"}
        score, criteria = score_persons(a, dict(a))
        assert score == 40.0
        assert "phone" not in criteria

    def test_score_within_bounds(self):
        score, _ = score_persons({}, {})
        assert 0.0 <= score <= 100.0
