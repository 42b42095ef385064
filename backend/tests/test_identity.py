import pytest

from athena.engine.identity import (
    MAX_TAG_ATTEMPTS, candidate_tags, make_full_tag, normalize_username, random_discriminator,
)


class TestNormalizeUsername:
    def test_strips_and_lowercases(self):
        assert normalize_username("  Wanderer ") == "wanderer"

    def test_allows_digits_and_underscore(self):
        assert normalize_username("night_owl_42") == "night_owl_42"

    @pytest.mark.parametrize("raw", ["", " ", "a", "x" * 21])
    def test_length_bounds(self, raw):
        with pytest.raises(ValueError):
            normalize_username(raw)

    @pytest.mark.parametrize("raw", ["bad name", "emoji🙂", "dash-ed", "hash#1234"])
    def test_rejects_other_characters(self, raw):
        with pytest.raises(ValueError):
            normalize_username(raw)

    def test_boundaries_accepted(self):
        assert normalize_username("ab") == "ab"
        assert normalize_username("x" * 20) == "x" * 20


class TestTags:
    def test_full_tag_format(self):
        assert make_full_tag("wanderer", "4821") == "wanderer#4821"

    def test_discriminator_is_four_digits(self):
        for _ in range(200):
            d = random_discriminator()
            assert len(d) == 4
            assert 1000 <= int(d) <= 9999

    def test_candidate_tags_yields_bounded_attempts(self):
        tags = list(candidate_tags("wanderer"))
        assert len(tags) == MAX_TAG_ATTEMPTS
        for discriminator, full_tag in tags:
            assert full_tag == f"wanderer#{discriminator}"
