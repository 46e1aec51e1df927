import pytest

from design_review.exceptions import SessionNotFoundError
from design_review.models import GroupSession
from design_review.pipeline import group_aggregator
from design_review.pipeline.group_aggregator import aggregate, consistency_score, flow_continuity, thematic_coherence


def test_consistency_uses_mean_per_category_deviation():
    per_image = [
        {"categoryScores": {"usability": 80, "accessibility": 70}},
        {"categoryScores": {"usability": 60, "accessibility": 70}},
    ]
    # usability std 10, accessibility std 0 -> mean 5 -> 100 - 2 * 5
    assert consistency_score(per_image) == 90


def test_consistency_falls_back_to_overall_scores():
    assert consistency_score([{"overallScore": 90}, {"overallScore": 50}]) == 60


def test_consistency_is_clamped_and_undefined_for_single_image():
    assert consistency_score([{"overallScore": 0}, {"overallScore": 100}]) == 0
    assert consistency_score([{"overallScore": 80}]) is None


def test_thematic_coherence_is_mean_pairwise_jaccard():
    per_image = [{"elements": ["Header", "Search", "Grid"]}, {"elements": ["header", "search", "Cart"]}]
    assert thematic_coherence(per_image) == 50


def test_flow_continuity_counts_transitions_without_gaps():
    per_image = [{}, {"journeyGaps": ["dead end"]}, {}]
    assert flow_continuity(per_image) == 50
    assert flow_continuity([{}]) is None


def test_aggregate_prefers_ai_cross_image_figures_and_merges_patterns():
    per_image = [
        {"overallScore": 80, "elements": ["Header", "Search", "Grid"], "inconsistencies": ["Radius differs"]},
        {"overallScore": 60, "elements": ["header", "search", "Cart"], "journeyGaps": ["No back link"]},
    ]
    ai_output = {
        "summary": {"thematicCoherence": 88, "overallScore": 10},
        "insights": ["Consistent header"],
        "recommendations": ["Unify buttons"],
        "patterns": {
            "commonElements": ["search", "Footer"],
            "designInconsistencies": ["radius differs", "Icon set mixed"],
            "userJourneyGaps": ["No back link"],
        },
    }

    result = aggregate(per_image, ai_output, group_context="checkout flow")

    assert result.summary["overallScore"] == 70.0
    assert result.summary["consistency"] == 80
    assert result.summary["thematicCoherence"] == 88
    assert result.summary["userFlowContinuity"] == 0
    assert result.patterns["commonElements"] == ["Header", "Search", "Footer"]
    assert result.patterns["designInconsistencies"] == ["Radius differs", "Icon set mixed"]
    assert result.patterns["userJourneyGaps"] == ["No back link"]
    assert result.insights == ["Consistent header"]
    assert result.recommendations == ["Unify buttons"]


def test_aggregate_without_ai_output():
    result = aggregate([{"elements": ["nav"]}, {"elements": ["nav"]}])

    assert result.summary["overallScore"] is None
    assert result.summary["consistency"] is None
    assert result.summary["thematicCoherence"] == 100
    assert result.summary["userFlowContinuity"] == 100
    assert result.patterns["commonElements"] == ["nav"]
    assert result.insights == []


def test_aggregate_never_splits_string_patterns_into_characters():
    result = aggregate([], {"patterns": {"commonElements": "header, footer", "userJourneyGaps": None}})

    assert result.patterns["commonElements"] == ["header, footer"]
    assert result.patterns["designInconsistencies"] == []
    assert result.patterns["userJourneyGaps"] == []


@pytest.mark.asyncio
async def test_fork_creates_child_session_and_leaves_source_untouched(db):
    source = await group_aggregator.create_session(
        db,
        group_id="g1",
        prompt="How consistent is the checkout?",
        subject_ids=["a", "b"],
        subject_urls=["https://x/a.png", "https://x/b.png"],
    )

    child = await group_aggregator.fork(db, source.id, "Focus on the mobile layout")

    assert child.id != source.id
    assert child.parent_session_id == source.id
    assert child.group_id == "g1"
    assert child.subject_ids == ["a", "b"]
    assert child.is_custom is True
    refreshed = await db.get(GroupSession, source.id)
    await db.refresh(refreshed)
    assert refreshed.prompt == "How consistent is the checkout?"
    assert refreshed.parent_session_id is None


@pytest.mark.asyncio
async def test_fork_of_unknown_session_raises(db):
    with pytest.raises(SessionNotFoundError):
        await group_aggregator.fork(db, "missing", "anything")
