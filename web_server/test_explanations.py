"""Tests for match explanations and result commentary."""
import asyncio

from services.explanations import (
    FALLBACK_STARTERS,
    generate_quick_explanations,
    generate_result_commentary,
    generate_rich_explanation,
)
from services.intent_parser import keyword_intent
from services.ranker import rank_candidates
from services.retriever import Candidate


def _ranked(make_profile, intent):
    candidates = [
        Candidate(make_profile("zara", interests=["music"], course="Law"), 0.95, True),
        Candidate(make_profile("adam", interests=[], course=None, prompts=[]), 0.1, False),
        Candidate(make_profile("mia", interests=["art"], personality_type="INFP"), 0.6, False),
    ]
    return rank_candidates(candidates, intent)


class TestQuickExplanations:
    def test_index_aligned_with_input(self, make_profile):
        intent = keyword_intent("someone chill into music")
        ranked = _ranked(make_profile, intent)

        explanations = generate_quick_explanations(ranked, intent)

        assert len(explanations) == len(ranked)
        for result, explanation in zip(ranked, explanations):
            assert explanation.match_percentage == result.scores.total

    def test_at_most_three_starters(self, make_profile):
        intent = keyword_intent("someone into music")
        profile = make_profile(
            "zara",
            interests=["music"],
            personality_type="ENFP",
            prompts=[{"prompt_id": "p1", "response": "Sunday jazz at the park"}],
        )
        ranked = rank_candidates([Candidate(profile, 0.9, False)], intent)

        starters = generate_quick_explanations(ranked, intent)[0].conversation_starters

        assert len(starters) == 3
        assert starters[0] == "I see you're into music. What got you started?"

    def test_generic_starters_when_profile_is_sparse(self, make_profile):
        intent = keyword_intent("zxq")
        profile = make_profile("adam", interests=[], course=None)

        explanation = generate_quick_explanations(rank_candidates([Candidate(profile, 0.0, False)], intent), intent)[0]

        assert explanation.conversation_starters == FALLBACK_STARTERS

    def test_empty_input(self):
        assert generate_quick_explanations([], keyword_intent("anyone")) == []


class TestResultCommentary:
    def test_no_results(self):
        assert "Couldn't find anyone" in generate_result_commentary(0, keyword_intent("anyone"), None)

    def test_few_results(self):
        assert generate_result_commentary(1, keyword_intent("anyone"), None).startswith("Found 1 person")

    def test_many_results_mention_vibe_and_top_score(self, make_profile):
        intent = keyword_intent("someone chill and relaxed")
        top = _ranked(make_profile, intent)[0]

        commentary = generate_result_commentary(12, intent, top)

        assert "chill souls" in commentary
        assert f"{top.scores.total:.0f}%" in commentary


class TestRichExplanation:
    def test_uses_provider_output(self, make_profile, fake_llm):
        intent = keyword_intent("someone into music")
        result = _ranked(make_profile, intent)[0]
        llm = fake_llm(payload={
            "tagline": "Your concert buddy",
            "summary": "You both live for live music.",
            "starters": ["Best gig this year?"],
            "emoji": "🎸",
        })

        explanation = asyncio.run(generate_rich_explanation(llm, result, intent, "Sam"))

        assert explanation.tagline == "Your concert buddy"
        assert explanation.conversation_starters == ["Best gig this year?"]
        assert "Sam" in llm.prompts[0]

    def test_provider_failure_returns_quick_explanation(self, make_profile, fake_llm):
        intent = keyword_intent("someone into music")
        result = _ranked(make_profile, intent)[0]

        explanation = asyncio.run(
            generate_rich_explanation(fake_llm(error=RuntimeError("timeout")), result, intent, "Sam")
        )

        assert explanation == generate_quick_explanations([result], intent)[0]
