"""Unit tests for effort level detection."""

import logging

import pytest

from specfirst.effort import (
    SOURCE_DEFAULT,
    SOURCE_FLAG,
    SOURCE_HINT,
    detect_effort,
    detect_effort_from_flags,
    detect_effort_level,
    should_activate,
)
from specfirst.errors import ConfigurationError
from specfirst.models import EffortLevel


class TestFlags:
    """Test cases for detect_effort_from_flags."""

    def test_no_flags_is_standard(self):
        detection = detect_effort_from_flags()

        assert detection.effort_level is EffortLevel.STANDARD
        assert detection.source == SOURCE_DEFAULT
        assert not detection.explicit

    @pytest.mark.parametrize("flags, level", [
        ({"quick": True}, EffortLevel.MINIMAL),
        ({"thorough": True}, EffortLevel.THOROUGH),
        ({"batch": True}, EffortLevel.STANDARD),
        ({"batch": True, "quick": True}, EffortLevel.MINIMAL),
    ])
    def test_flag_levels(self, flags, level):
        detection = detect_effort_from_flags(**flags)

        assert detection.effort_level is level
        assert detection.source == SOURCE_FLAG
        assert detection.confidence == 1.0
        assert detection.batch is bool(flags.get("batch"))

    def test_quick_and_thorough_conflict(self):
        with pytest.raises(ConfigurationError) as excinfo:
            detect_effort_from_flags(quick=True, thorough=True)
        assert "at most one" in excinfo.value.resolution


class TestHints:
    """Test cases for detect_effort_level."""

    def test_none(self):
        assert detect_effort_level(None).source == SOURCE_DEFAULT

    def test_mapping(self):
        detection = detect_effort_level({"effort_level": "DETERMINED"})

        assert detection.effort_level is EffortLevel.DETERMINED
        assert detection.source == SOURCE_HINT
        assert detection.confidence == 1.0

    def test_mapping_with_unknown_level(self):
        detection = detect_effort_level({"effort_level": "heroic"})

        assert detection.effort_level is EffortLevel.STANDARD
        assert not detection.explicit

    @pytest.mark.parametrize("text, level", [
        ("Running with DETERMINED effort on a large-scale feature", EffortLevel.DETERMINED),
        ("please be thorough", EffortLevel.THOROUGH),
        ("minimal touch-up", EffortLevel.MINIMAL),
        ("Large-scale multi-phase architectural project", EffortLevel.THOROUGH),
        ("minimal but comprehensive spec-driven cleanup", EffortLevel.THOROUGH),
        ("determined, large-scale and multi-phase", EffortLevel.DETERMINED),
    ])
    def test_text(self, text, level):
        assert detect_effort_level(text).effort_level is level

    def test_text_without_indicators(self):
        detection = detect_effort_level("fix a typo")

        assert detection.effort_level is EffortLevel.STANDARD
        assert detection.source == SOURCE_DEFAULT


class TestDetectEffort:
    def test_flags_win_over_hint(self):
        detection = detect_effort({"quick": True, "effort": "determined"})
        assert detection.effort_level is EffortLevel.MINIMAL

    def test_hint_used_without_flags(self):
        detection = detect_effort({"quick": False, "batch": False, "thorough": False, "effort": "thorough"})
        assert detection.effort_level is EffortLevel.THOROUGH

    def test_explicit_choice_is_logged(self, caplog):
        with caplog.at_level(logging.INFO, logger="specfirst.effort"):
            detect_effort({"thorough": True})
            detect_effort(None)

        assert [r.getMessage() for r in caplog.records] == ["Effort mode: thorough (thorough flag)"]

    def test_to_dict(self):
        data = detect_effort({"batch": True}).to_dict()

        assert data == {
            "effort_level": "standard",
            "reason": "batch flag",
            "confidence": 1.0,
            "source": SOURCE_FLAG,
            "batch": True,
            "activates_workflow": False,
        }


@pytest.mark.parametrize("level, expected", [
    (EffortLevel.MINIMAL, False),
    (EffortLevel.STANDARD, False),
    (EffortLevel.THOROUGH, True),
    ("DETERMINED", True),
    ("unknown", False),
])
def test_should_activate(level, expected):
    assert should_activate(level) is expected
