import json

from design_review.inference.json_guard import extract_json, try_parse_json
from design_review.inference.normalize import (
    normalize_analysis,
    normalize_context,
    normalize_group,
    normalize_vision,
)


def test_extract_json_from_prose_and_fences():
    assert extract_json('Sure! {"a": 1} hope that helps') == '{"a": 1}'
    assert extract_json("no json here") is None
    assert try_parse_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert try_parse_json("{broken") is None


def test_group_output_parsed_from_unstructured_text_with_warning():
    raw = 'Here is the review:\n{"summary": {"overallScore": 150}, "insights": ["x"]}\nThanks'

    norm = normalize_group(raw)

    assert norm.ok
    assert norm.data["summary"]["overallScore"] == 100
    assert "Parsed JSON from unstructured text" in norm.warnings


def test_group_output_accepts_nested_shapes_and_drops_non_numeric_scores():
    raw = {"result": {"summary": {"overallScore": "n/a", "consistency": "72"}, "recommendations": ["y"]}}

    norm = normalize_group(raw)

    assert norm.ok
    assert "overallScore" not in norm.data["summary"]
    assert norm.data["summary"]["consistency"] == 72
    assert "summary.overallScore was not numeric" in norm.warnings


def test_group_output_unparseable_is_not_ok():
    norm = normalize_group("the model refused")

    assert not norm.ok
    assert norm.warnings == ["Could not parse JSON from text content"]


def test_analysis_output_requires_some_content():
    assert not normalize_analysis(json.dumps({"confidence": 0.9})).ok

    norm = normalize_analysis(json.dumps({
        "analysis": {"summary": {"categoryScores": {"usability": "80", "visual": "great"}}, "confidence": 85}
    }))
    assert norm.ok
    assert norm.data["summary"]["categoryScores"] == {"usability": 80.0}
    assert norm.data["confidence"] == 0.85
    assert "categoryScores.visual was not numeric" in norm.warnings


def test_context_fallback_infers_type_and_lowers_confidence():
    norm = normalize_context(json.dumps({"notes": "a KPI chart with filters", "confidence": 0.8}))

    assert norm.ok
    assert norm.data["primaryType"] == "dashboard"
    assert norm.data["domain"] == "technology"
    assert norm.data["confidence"] == 0.6
    assert any("inferred" in w for w in norm.warnings)


def test_context_without_confidence_gets_derived_value():
    norm = normalize_context({"primaryType": "landing"})

    assert norm.data["domain"] == "general"
    assert norm.data["confidence"] == 0.7
    assert norm.data["platform"] == "web"


def test_google_annotations_become_per_image_elements():
    raw = json.dumps({"annotations": [
        {"labelAnnotations": [{"description": "Button"}], "localizedObjectAnnotations": [{"name": "Logo"}],
         "textAnnotations": [{"description": "Sign in\nEmail"}, {"description": "Sign"}]},
        {"error": {"message": "bad image"}},
    ]})

    norm = normalize_vision("google", raw, image_count=2)

    assert norm.ok
    assert norm.data["images"][0] == {"elements": ["Button", "Logo"], "text": ["Sign in\nEmail"]}
    assert norm.data["images"][1] == {"elements": [], "text": []}


def test_vision_output_is_padded_to_image_count():
    norm = normalize_vision("openai", json.dumps({"images": [{"elements": ["nav"]}]}), image_count=2)

    assert len(norm.data["images"]) == 2
    assert "openai described 1 images, expected 2" in norm.warnings


def test_group_patterns_given_as_strings_are_kept_whole():
    raw = json.dumps({
        "insights": ["Shared header"],
        "patterns": {
            "commonElements": "header, footer",
            "designInconsistencies": ["Button radius", "", {"name": "Icon set"}, 7],
            "userJourneyGaps": 3,
        },
    })

    norm = normalize_group(raw)

    assert norm.ok
    assert norm.data["patterns"] == {
        "commonElements": ["header, footer"],
        "designInconsistencies": ["Button radius", "Icon set"],
        "userJourneyGaps": [],
    }
    assert "patterns.commonElements was not a list" in norm.warnings
    assert "patterns.userJourneyGaps was not a list" in norm.warnings
    assert not any("designInconsistencies" in w for w in norm.warnings)
