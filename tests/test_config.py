"""Tests for the central parameter dictionaries."""

import pytest

from pseudobulk_utils import config


@pytest.mark.unit
class TestValidateParams:
    """Test validate_params on the shipped and on broken settings."""

    def test_defaults_are_valid(self):
        assert config.validate_params() is True

    def test_threshold_out_of_range(self, monkeypatch):
        monkeypatch.setitem(config.DE_PARAMS, "fdr_threshold", 1.5)
        with pytest.raises(ValueError, match="fdr_threshold"):
            config.validate_params()

    def test_all_errors_reported_together(self, monkeypatch):
        monkeypatch.setitem(config.DA_PARAMS, "transform", "sqrt")
        monkeypatch.setitem(config.ENRICHMENT_PARAMS, "rank_metric", "logFC")
        with pytest.raises(ValueError) as excinfo:
            config.validate_params()
        assert "transform" in str(excinfo.value)
        assert "rank_metric" in str(excinfo.value)

    def test_unknown_contrast_condition(self, monkeypatch):
        monkeypatch.setattr(config, "CONTRASTS", [("heat_vs_TN", "heat", "TN")])
        with pytest.raises(ValueError, match="heat_vs_TN"):
            config.validate_params()

    def test_duplicate_lesson(self, monkeypatch):
        schedule = list(config.LESSON_SCHEDULE) + [("Extra", ["01_setup_intro_dataset"])]
        monkeypatch.setattr(config, "LESSON_SCHEDULE", schedule)
        with pytest.raises(ValueError, match="more than once"):
            config.validate_params()


@pytest.mark.unit
class TestSettings:
    """Test the values the lessons depend on."""

    def test_reference_is_first_condition(self):
        assert config.CONDITIONS[0] == config.REFERENCE_CONDITION == "TN"

    def test_contrasts_use_reference(self):
        assert all(group2 == config.REFERENCE_CONDITION for _, _, group2 in config.CONTRASTS)

    def test_schedule_order(self):
        sections = [section for section, _ in config.LESSON_SCHEDULE]
        assert sections == [
            "Pre-reading", "Day 1", "Day 1 Self-learning",
            "Day 2", "Day 2 Self-learning", "Day 3",
        ]
        lessons = [lesson for _, items in config.LESSON_SCHEDULE for lesson in items]
        assert lessons == sorted(lessons)
        assert len(lessons) == 9

    def test_config_summary_mentions_contrasts(self):
        summary = config.get_config_summary()
        assert "Workshop Settings" in summary
        for name, _, _ in config.CONTRASTS:
            assert name in summary
