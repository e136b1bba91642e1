"""Tests for string similarity, name matching, and disambiguation text."""

import pytest

from concierge.entities.matchers import (
    could_be_nickname,
    extract_email_username,
    extract_name_parts,
    generate_disambiguation_question,
    generate_not_found_message,
    jaro_winkler_similarity,
    levenshtein_distance,
    levenshtein_similarity,
    name_matches_email,
    name_similarity,
    normalize_name,
    normalize_string,
    rank_candidates,
    text_similarity,
)
from concierge.entities.types import ResolutionCandidate

SAMPLES = [
    "", "a", "John", "John Smith", "José García", "Q1 planning review",
    "martha", "marhta", "  spaced   out  ", "DIXON", "dicksonx",
]


class TestNormalization:
    def test_normalize_string(self):
        assert normalize_string("  José   GARCÍA ") == "jose garcia"

    def test_normalize_string_empty(self):
        assert normalize_string("   ") == ""

    def test_normalize_name_strips_honorifics(self):
        assert normalize_name("Dr. Jane Doe") == "jane doe"
        assert normalize_name("Mrs Smith") == "smith"
        assert normalize_name("Professor X. Xavier") == "x. xavier"

    def test_normalize_name_keeps_non_honorific_prefix(self):
        assert normalize_name("Drew Barrymore") == "drew barrymore"

    def test_extract_name_parts(self):
        parts = extract_name_parts("Mary Ann Smith")
        assert parts.first == "mary"
        assert parts.middle == ["ann"]
        assert parts.last == "smith"
        assert parts.full == "mary ann smith"

    def test_extract_single_token(self):
        parts = extract_name_parts("Cher")
        assert parts.first == "cher"
        assert parts.last == ""

    def test_extract_empty(self):
        parts = extract_name_parts("")
        assert parts.first == "" and parts.full == ""


class TestLevenshtein:
    def test_distance(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("abc", "abc") == 0

    def test_similarity_identical_after_normalization(self):
        assert levenshtein_similarity("José", "jose") == 1.0

    def test_similarity_empty_side(self):
        assert levenshtein_similarity("", "abc") == 0.0

    def test_similarity_value(self):
        assert levenshtein_similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)

    @pytest.mark.parametrize("s", SAMPLES)
    def test_self_similarity_is_one(self, s):
        assert levenshtein_similarity(s, s) == 1.0

    def test_bounds(self):
        for a in SAMPLES:
            for b in SAMPLES:
                assert 0.0 <= levenshtein_similarity(a, b) <= 1.0


class TestJaroWinkler:
    def test_classic_pair(self):
        assert jaro_winkler_similarity("martha", "marhta") == pytest.approx(0.9611, abs=1e-3)

    def test_no_common_characters(self):
        assert jaro_winkler_similarity("abc", "xyz") == 0.0

    def test_prefix_boost_limited_to_shared_prefix(self):
        assert jaro_winkler_similarity("dixon", "dicksonx") == pytest.approx(0.8133, abs=1e-3)

    @pytest.mark.parametrize("s", SAMPLES)
    def test_self_similarity_is_one(self, s):
        assert jaro_winkler_similarity(s, s) == 1.0

    def test_bounds(self):
        for a in SAMPLES:
            for b in SAMPLES:
                assert 0.0 <= jaro_winkler_similarity(a, b) <= 1.0


class TestTextSimilarity:
    def test_identical(self):
        assert text_similarity("report", "report") == pytest.approx(1.0)

    def test_word_overlap_dominates(self):
        assert text_similarity("quarterly report", "Q1 quarterly report") > 0.7

    def test_unrelated(self):
        assert text_similarity("dentist", "grocery list") < 0.4

    def test_short_words_count_against(self):
        assert text_similarity("a report", "report") < text_similarity("report", "report")

    def test_empty(self):
        assert text_similarity("", "anything") == 0.0
        assert text_similarity("anything", "") == 0.0


class TestNames:
    def test_exact_full_match(self):
        assert name_similarity("Dr. John Smith", "john smith") == 1.0

    def test_first_name_only(self):
        assert name_similarity("John", "John Smith") >= 0.8

    def test_last_name_only(self):
        assert name_similarity("Smith", "John Smith") >= 0.8

    def test_first_and_last_with_middle(self):
        assert name_similarity("John Smith", "John Q. Smith") == 0.95

    def test_unrelated_names_score_low(self):
        assert name_similarity("Zelda", "John Smith") < 0.6

    def test_nickname_table(self):
        assert could_be_nickname("Bill", "William Jones")
        assert could_be_nickname("liz", "Elizabeth Taylor")

    def test_nickname_prefix(self):
        assert could_be_nickname("Jo", "Joseph Gordon")

    def test_nickname_rejects_single_char_and_strangers(self):
        assert not could_be_nickname("x", "Xavier Woods")
        assert not could_be_nickname("Bob", "William Jones")

    def test_email_username(self):
        assert extract_email_username("Foo.Bar@example.com") == "foo.bar"
        assert extract_email_username("not-an-email") == "not-an-email"

    @pytest.mark.parametrize("email", [
        "john@example.com",
        "john.smith@example.com",
        "johnsmith@example.com",
        "john_smith@example.com",
        "jsmith@example.com",
        "j.smith@example.com",
        "johns@example.com",
    ])
    def test_name_matches_email_patterns(self, email):
        assert name_matches_email("John Smith", email)

    def test_name_does_not_match_unrelated_email(self):
        assert not name_matches_email("Alice Wong", "bob@example.com")


class TestDisambiguationText:
    def _candidates(self):
        return [
            ResolutionCandidate(id="2", label="Sarah Kim (sk@x.com)", confidence=0.8),
            ResolutionCandidate(id="1", label="Sarah Lee (sl@x.com)", confidence=0.9),
        ]

    def test_rank_candidates(self):
        ranked = rank_candidates(self._candidates())
        assert [c.id for c in ranked] == ["1", "2"]

    def test_person_question_lists_ranked_options(self):
        question = generate_disambiguation_question("person", "Sarah", self._candidates())
        assert question == (
            'I found multiple people matching "Sarah". '
            "Did you mean: 1. Sarah Lee (sl@x.com), 2. Sarah Kim (sk@x.com)?"
        )

    def test_question_caps_at_five_options(self):
        many = [
            ResolutionCandidate(id=str(i), label=f"Task {i}", confidence=0.9 - i * 0.01)
            for i in range(8)
        ]
        question = generate_disambiguation_question("task", "report", many)
        assert "5. Task 4" in question
        assert "6." not in question

    def test_unknown_type_uses_generic_question(self):
        question = generate_disambiguation_question("widget", "x", self._candidates())
        assert question.startswith('Multiple matches found for "x"')

    def test_not_found_person(self):
        message = generate_not_found_message("person", "Zed")
        assert "anyone named \"Zed\"" in message

    def test_not_found_location_alias(self):
        assert generate_not_found_message("location", "cafe") == generate_not_found_message("place", "cafe")

    def test_not_found_unknown_type(self):
        assert generate_not_found_message("widget", "x") == (
            "I couldn't find \"x\". Could you provide more details?"
        )
