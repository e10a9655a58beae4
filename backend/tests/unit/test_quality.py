"""
Unit Tests — text quality heuristics
"""

from __future__ import annotations

import pytest

from contextrag.processing.quality import (
    alphabetic_ratio,
    has_character_level_spacing,
    looks_corrupted,
    repair_character_spacing,
)


@pytest.mark.unit
class TestAlphabeticRatio:

    def test_plain_prose_is_mostly_letters(self):
        assert alphabetic_ratio("The quick brown fox.") > 0.9

    def test_ratio_ignores_whitespace(self):
        assert alphabetic_ratio("a b c d") == 1.0

    @pytest.mark.parametrize("value", ["", "   \n\t", None, 42])
    def test_no_text_is_zero(self, value):
        assert alphabetic_ratio(value) == 0.0

    def test_accented_letters_count(self):
        assert alphabetic_ratio("àèéìòù ÄÖÜß ñç") == 1.0

    def test_symbols_and_digits_do_not_count(self):
        assert alphabetic_ratio("12345 ×÷") == 0.0


@pytest.mark.unit
class TestLooksCorrupted:

    def test_symbol_soup_is_corrupted(self):
        assert looks_corrupted("§±¶•ª∆ 0123 ¤¤¤ ### @@@ %%%", min_length=10)

    def test_short_text_is_never_judged(self):
        assert not looks_corrupted("3.", min_length=100)
        assert not looks_corrupted("####", min_length=4)

    def test_prose_is_not_corrupted(self):
        text = "Il contratto ha durata annuale e si rinnova tacitamente. " * 5
        assert not looks_corrupted(text, min_length=100)

    def test_non_string_is_not_corrupted(self):
        assert not looks_corrupted(None)


@pytest.mark.unit
class TestCharacterSpacing:

    def test_scenario_spaced_text_is_detected_and_repaired(self):
        spaced = "H e l l o   w o r l d .   T h i s   i s   a   t e s t ."
        assert has_character_level_spacing(spaced)
        assert repair_character_spacing(spaced) == "Hello world. This is a test."

    def test_normal_text_is_not_spaced(self):
        assert not has_character_level_spacing("A normal sentence with a few words in it.")

    def test_four_spaced_letters_are_not_enough(self):
        assert not has_character_level_spacing("a b c d")

    def test_six_spaced_letters_are_spacing(self):
        assert has_character_level_spacing("a b c d e f")

    def test_two_plain_words_are_not_spacing(self):
        assert not has_character_level_spacing("hello world")

    def test_apostrophes_are_joined(self):
        assert repair_character_spacing("l ' a c q u a") == "l'acqua"

    def test_acronym_dots_are_tightened(self):
        assert repair_character_spacing("U . S . A .") == "U.S.A."

    def test_brackets_lose_inner_spaces(self):
        assert repair_character_spacing("( n o t e )") == "(note)"

    def test_hopeless_text_is_only_trimmed(self):
        junk = "  # # # 1 2 3 @ @ @  "
        assert repair_character_spacing(junk) == junk.strip()

    @pytest.mark.parametrize("value", [None, 3.5, ""])
    def test_non_text_never_raises(self, value):
        assert repair_character_spacing(value) == ""
        assert not has_character_level_spacing(value)
