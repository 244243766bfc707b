"""Tests for the intent parser and its keyword fallback."""
import asyncio

import pytest

from errors import AgentValidationError
from models.intent import HardFilters, Vibe
from services.intent_parser import (
    DEFAULT_BATCH_QUERY,
    IntentParser,
    extract_keyword_filters,
    intent_from_payload,
    intent_query_from_preferences,
    keyword_intent,
    merge_refinement,
    refinement_filters_from_payload,
)


class TestExtractKeywordFilters:
    def test_reads_same_course_and_year(self):
        filters = extract_keyword_filters("someone in the same course, 2nd year")

        assert filters.same_course is True
        assert filters.year_of_study == [2]

    def test_reads_age_range_in_order(self):
        filters = extract_keyword_filters("girls aged 24 to 20")

        assert filters.gender == ["female"]
        assert (filters.age_min, filters.age_max) == (20, 24)

    def test_ambiguous_gender_is_left_unset(self):
        assert extract_keyword_filters("guys or girls who love music").gender == []

    def test_nothing_stated_means_empty_filters(self):
        assert extract_keyword_filters("someone kind").is_empty()

    def test_reads_lifestyle_filters(self):
        filters = extract_keyword_filters("a Christian non-smoker who drinks socially")

        assert filters.religion == "christian"
        assert filters.smoking == "no"
        assert filters.drinking == "socially"

    def test_sober_means_never_drinks(self):
        assert extract_keyword_filters("someone sober and kind").drinking == "never"


class TestKeywordIntent:
    def test_picks_vibe_traits_and_interests(self):
        intent = keyword_intent("an adventurous outgoing person into hiking and music")

        assert intent.vibe == Vibe.adventurous
        assert "outgoing" in intent.traits
        assert intent.interests == ["music", "hiking"]
        assert intent.confidence <= 0.6

    def test_unknown_words_stay_unspecified(self):
        intent = keyword_intent("zxq plorp")

        assert intent.vibe == Vibe.unspecified
        assert intent.confidence == pytest.approx(0.2)
        assert intent.semantic_query == "zxq plorp"

    def test_soft_preferences_are_not_filters(self):
        intent = keyword_intent("someone for deep talks, looking for something serious, quality time matters")

        assert intent.looking_for == "relationship"
        assert intent.communication_style == "deep_talks"
        assert intent.love_language == "time"
        assert intent.hard_filters.is_empty()


class TestIntentFromPayload:
    def test_valid_payload(self):
        payload = {
            "vibe": "Creative",
            "filters": {"gender": ["Female"], "year_of_study": [3], "same_course": False},
            "traits": ["funny"],
            "interests": ["art"],
            "semantic_query": "A playful artist who loves galleries.",
            "confidence": 0.9,
        }

        intent = intent_from_payload(payload, "funny artsy girl in third year")

        assert intent.vibe == Vibe.creative
        assert intent.hard_filters.gender == ["female"]
        assert intent.hard_filters.year_of_study == [3]
        assert intent.semantic_query == "A playful artist who loves galleries."

    def test_low_confidence_degrades_to_raw_text(self):
        payload = {"vibe": "romantic", "semantic_query": "Something else", "confidence": 0.1}

        intent = intent_from_payload(payload, "  someone   nice ")

        assert intent.vibe == Vibe.unspecified
        assert intent.semantic_query == "someone nice"

    def test_out_of_range_confidence_is_clamped(self):
        intent = intent_from_payload({"confidence": 7, "semantic_query": "x y"}, "query text")
        assert intent.confidence == 1.0

    def test_invalid_filters_fall_back_to_keywords(self):
        payload = {"filters": {"age_min": 30, "age_max": 20}, "confidence": 0.8, "semantic_query": "s"}

        intent = intent_from_payload(payload, "2nd year people")

        assert intent.hard_filters == HardFilters(year_of_study=[2])

    def test_reads_lifestyle_filters_and_soft_preferences(self):
        payload = {
            "filters": {"religion": " Muslim ", "smoking": "no", "drinking": None},
            "looking_for": "Friends",
            "communication_style": "memes",
            "love_language": "  ",
            "semantic_query": "A kind friend.",
            "confidence": 0.8,
        }

        intent = intent_from_payload(payload, "muslim non-smoker friends who send memes")

        assert intent.hard_filters == HardFilters(religion="muslim", smoking="no")
        assert intent.looking_for == "friends"
        assert intent.communication_style == "memes"
        assert intent.love_language is None

    def test_refinement_filters_are_read_separately(self):
        payload = {"filters": {"year_of_study": [2, 3]}, "refinement_filters": {"year_of_study": [3]}}

        assert refinement_filters_from_payload(payload) == HardFilters(year_of_study=[3])
        assert refinement_filters_from_payload({"refinement_filters": None}).is_empty()
        assert refinement_filters_from_payload({"refinement_filters": {"age_min": 9}}).is_empty()


class TestMergeRefinement:
    def test_stated_override_wins_and_others_carry_over(self):
        previous = keyword_intent("girls in 2nd year")
        refined = keyword_intent("girls in 2nd year, but 3rd year instead")

        merged = merge_refinement(previous, refined, extract_keyword_filters("3rd year instead"))

        assert merged.hard_filters.gender == ["female"]
        assert merged.hard_filters.year_of_study == [3]
        assert merged.is_refinement is True

    def test_without_overrides_previous_filters_hold(self):
        previous = keyword_intent("2nd year people")
        refined = keyword_intent("2nd year people, but 3rd year instead")

        assert merge_refinement(previous, refined).hard_filters.year_of_study == [2]

    def test_soft_preferences_carry_over(self):
        previous = keyword_intent("someone into memes")
        refined = keyword_intent("zxq")

        assert merge_refinement(previous, refined).communication_style == "memes"

    def test_previous_vibe_kept_when_refinement_has_none(self):
        previous = keyword_intent("someone chill and relaxed")
        refined = keyword_intent("zxq")

        assert merge_refinement(previous, refined).vibe == Vibe.chill


class TestIntentQueryFromPreferences:
    def test_default_without_positive_traits(self):
        assert intent_query_from_preferences({}) == DEFAULT_BATCH_QUERY
        assert intent_query_from_preferences({"interest_gym": -0.4}) == DEFAULT_BATCH_QUERY

    def test_uses_three_strongest_traits(self):
        prefs = {"interest_music": 0.9, "course_law": 0.5, "personality_enfp": 0.7, "interest_art": 0.1}

        query = intent_query_from_preferences(prefs)

        assert query == f"{DEFAULT_BATCH_QUERY} who are into music, enfp, studying law"


class TestIntentParser:
    def test_empty_query_is_rejected(self):
        with pytest.raises(AgentValidationError) as exc:
            asyncio.run(IntentParser().parse_intent("   "))
        assert exc.value.code == "empty"

    def test_oversized_query_is_rejected(self):
        with pytest.raises(AgentValidationError) as exc:
            asyncio.run(IntentParser().parse_intent("a" * 701))
        assert exc.value.code == "too_long"

    def test_refinement_combines_text(self):
        previous = keyword_intent("someone funny")

        intent = asyncio.run(IntentParser().parse_intent("more spontaneous", previous))

        assert intent.raw_query == "someone funny, but more spontaneous"
        assert intent.is_refinement is True
        assert {"funny", "spontaneous"} <= set(intent.traits)

    def test_refined_year_replaces_previous_year(self):
        previous = keyword_intent("2nd year who loves music")

        intent = asyncio.run(IntentParser().parse_intent("3rd year instead", previous))

        assert intent.hard_filters.year_of_study == [3]

    def test_refined_gender_replaces_previous_gender(self):
        previous = keyword_intent("girls who love hiking")

        intent = asyncio.run(IntentParser().parse_intent("actually guys", previous))

        assert intent.hard_filters.gender == ["male"]
        assert intent.interests == ["hiking"]

    def test_provider_refinement_filters_override_previous(self, fake_llm):
        previous = keyword_intent("people in 2nd year")
        llm = fake_llm(
            payload={
                "filters": {"year_of_study": [2, 4]},
                "refinement_filters": {"year_of_study": [4]},
                "semantic_query": "A final year student.",
                "confidence": 0.8,
            }
        )

        intent = asyncio.run(IntentParser(llm).parse_intent("final year people instead", previous))

        assert intent.hard_filters.year_of_study == [4]
        assert "newest request" in llm.prompts[0]

    def test_provider_failure_falls_back_to_keywords(self, fake_llm):
        llm = fake_llm(error=RuntimeError("upstream 502"))

        intent = asyncio.run(IntentParser(llm).parse_intent("someone creative into art"))

        assert len(llm.prompts) == 2
        assert intent.vibe == Vibe.creative
        assert intent.interests == ["art"]

    def test_learned_preferences_are_sent_as_hints(self, fake_llm):
        llm = fake_llm(payload={"vibe": "social", "semantic_query": "An outgoing friend.", "confidence": 0.8})

        intent = asyncio.run(
            IntentParser(llm).parse_intent("someone fun", learned_preferences={"interest_music": 0.4})
        )

        assert "interest_music" in llm.prompts[0]
        assert intent.vibe == Vibe.social
