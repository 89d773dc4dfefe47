"""Tests for quality scoring, prompts and context scoring."""

import pytest

from media_seo.context import context_score, describe_image, final_score
from media_seo.errors import ConfigError
from media_seo.prompts import PromptBuilder, language_name, render
from media_seo.quality import (
    AltRules,
    KeywordRules,
    QualityScorer,
    QualityWeights,
    TitleRules,
    check_alt,
    check_keywords,
    check_title,
)


class TestFieldChecks:
    """Test per-field rule checks."""

    def test_alt_required(self):
        check = check_alt("", AltRules())
        assert check.score == 0.0
        assert check.errors == ["ALT text is required."]

    def test_alt_forbidden_phrase(self):
        check = check_alt("Photo of a red barn in autumn", AltRules())
        assert check.score == pytest.approx(0.8)
        assert any("photo of" in e for e in check.errors)

    def test_alt_too_long(self):
        check = check_alt("word " * 40, AltRules(max_length=125))
        assert check.score == pytest.approx(0.5)

    def test_alt_not_descriptive(self):
        check = check_alt("Red barnyard", AltRules())
        assert check.score == pytest.approx(0.8)

    def test_title_word_bounds(self):
        assert check_title("Barn", TitleRules()).score == pytest.approx(0.7)
        assert check_title("Red Barn in Vermont Autumn", TitleRules()).score == 1.0

    def test_keyword_duplicates_case_insensitive(self):
        check = check_keywords(["Barn", "barn", "autumn"], KeywordRules())
        assert check.score == pytest.approx(0.9)

    def test_too_few_keywords(self):
        check = check_keywords(["barn"], KeywordRules())
        assert check.score == pytest.approx(0.7)


class TestQualityScorer:
    """Test composite scoring and the auto-approve gate."""

    def test_clean_metadata_passes(self, good_metadata):
        report = QualityScorer().evaluate(good_metadata)
        assert report.score == 1.0
        assert report.passes_auto_approve
        assert report.valid

    def test_low_vendor_score_blocks(self, good_metadata):
        good_metadata.score = 0.79
        report = QualityScorer().evaluate(good_metadata)
        assert report.score == 1.0
        assert not report.passes_auto_approve

    def test_threshold_is_inclusive(self, good_metadata):
        good_metadata.score = 0.80
        assert QualityScorer().evaluate(good_metadata).passes_auto_approve

    def test_forbidden_phrase_blocks_despite_high_score(self, good_metadata):
        good_metadata.alt = "Image of a red barn beside a maple tree"
        good_metadata.score = 0.99
        report = QualityScorer().evaluate(good_metadata)
        assert not report.passes_auto_approve
        assert report.hard_violations == ['ALT text contains "image of"']

    def test_alt_over_limit_blocks(self, good_metadata):
        good_metadata.alt = "a" * 126
        assert not QualityScorer().evaluate(good_metadata).passes_auto_approve

    def test_weighted_composite(self, good_metadata):
        good_metadata.keywords = ["barn"]
        report = QualityScorer().evaluate(good_metadata)
        # keywords 0.7 weighted 0.2, everything else 1.0
        assert report.score == pytest.approx(0.94)
        assert report.field_scores["keywords"] == pytest.approx(0.7)

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ConfigError):
            QualityWeights(alt=0.5, title=0.5, caption=0.5, keywords=0.5)

    def test_weights_tolerance(self):
        QualityWeights(alt=0.405, title=0.2, caption=0.2, keywords=0.2)

    def test_from_config(self, good_metadata):
        scorer = QualityScorer.from_config(
            {
                "auto_approve_threshold": 0.95,
                "rules": {"alt": {"forbidden_phrases": ["barn"]}},
                "weights": {"alt": 0.25, "title": 0.25, "caption": 0.25, "keywords": 0.25},
            }
        )
        report = scorer.evaluate(good_metadata)
        assert scorer.threshold == 0.95
        assert report.hard_violations
        assert not report.passes_auto_approve

    def test_from_config_bad_rules(self):
        with pytest.raises(ConfigError):
            QualityScorer.from_config({"rules": {"alt": {"no_such_rule": 1}}})


class TestPrompts:
    """Test template rendering."""

    def test_language_names(self):
        assert language_name("cs") == "CZECH"
        assert language_name("xx") == "XX"

    def test_conditionals(self):
        template = "A{{#if name}} {{name}}{{/if}}."
        assert render(template, {"name": "barn"}) == "A barn."
        assert render(template, {"name": ""}) == "A."
        assert render(template, {}) == "A."

    def test_value_formatting(self):
        result = render("{{tags}} {{flag}} {{n}}", {"tags": ["a", "b"], "flag": True, "n": 3})
        assert result == "a, b true 3"

    def test_unknown_placeholder_kept(self):
        assert render("Hi {{who}}", {}) == "Hi {{who}}"

    def test_build_standard(self):
        builder = PromptBuilder(site_context="Travel blog", alt_max_length=100)
        prompt = builder.build("de", {"post_title": "Autumn in Vermont", "categories": ["travel", "usa"]})
        assert "SEO expert" in prompt
        assert "Site: Travel blog" in prompt
        assert "Page title: Autumn in Vermont" in prompt
        assert "Categories: travel, usa" in prompt
        assert "OUTPUT LANGUAGE: GERMAN" in prompt
        assert "at most 100 characters" in prompt
        assert "Tags:" not in prompt
        assert "multilingual" not in prompt

    def test_multilingual_block(self):
        prompt = PromptBuilder(is_multilingual=True).build("fr", {})
        assert "This site is multilingual" in prompt

    def test_custom_template(self):
        builder = PromptBuilder(variant="minimal", templates={"minimal": "Describe in {{language_name}}"})
        assert builder.build("en", {}) == "Describe in ENGLISH"
        assert builder.version == "minimal-custom"
        assert PromptBuilder().version == "standard"

    def test_unknown_variant(self):
        with pytest.raises(ValueError):
            PromptBuilder(variant="epic")


class TestContextScoring:
    """Test context and final scores."""

    def test_empty_context(self):
        assert context_score({}) == 0.0

    def test_full_context(self):
        context = {
            "post_title": "t",
            "categories": ["c"],
            "tags": ["t"],
            "filename_hint": "f",
            "exif_data": {"a": 1},
            "current_alt": "a",
            "site_topic": "s",
        }
        assert context_score(context) == pytest.approx(1.0)

    def test_final_score_blend(self):
        assert final_score(1.0, 1.0, 0.0) == pytest.approx(0.8)
        assert final_score(0.9, 0.5, 0.5) == pytest.approx(0.7)

    def test_describe_image(self):
        assert describe_image(1200, 800) == {"dimensions": "1200x800", "orientation": "landscape"}
        assert describe_image(800, 1200)["orientation"] == "portrait"
        assert describe_image(500, 500)["orientation"] == "square"
        assert describe_image(0, 10) == {}
