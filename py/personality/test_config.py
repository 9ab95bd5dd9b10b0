"""Tests for provider configuration loading."""

import json
import tempfile
from pathlib import Path

import pytest
from pydantic import ValidationError

from personality.config import ProviderConfig, load_config
from personality.constants import DEFAULT_HISTORY_LIMIT_SECS

PARAM_SET = {
    "recencyFactor": 0.5,
    "frequencyFactor": 0.5,
    "combinedDomainFactor": 0.5,
    "perfectFrequencyVisits": 10,
    "perfectCombinedDomainScore": 2,
    "multiDomainBoost": 0.1,
    "itemScoreFactor": 0,
}


def test_defaults_without_a_file():
    config = load_config(None)

    assert [segment.id for segment in config.time_segments] == ["hour", "day", "week", "weekPlus"]
    assert config.parameter_sets == {}
    assert config.history_limit_secs == DEFAULT_HISTORY_LIMIT_SECS


def test_loads_legacy_time_segments_and_parameter_sets():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = Path(temp_dir) / "config.json"
        path.write_text(json.dumps({
            "time_segments": [
                {"id": "recent", "startTime": 3600, "endTime": 0, "weightPosition": 1},
                {"id": "rest", "startTime": None, "endTime": 3600, "weightPosition": 0.5},
            ],
            "parameter_sets": {"paramSet1": PARAM_SET},
            "parameter_set": "paramSet1",
        }))

        config = load_config(path)

    assert [segment.id for segment in config.time_segments] == ["recent", "rest"]
    assert config.parameter_sets["paramSet1"].recency_factor == 0.5


def test_unknown_parameter_set_is_rejected():
    with pytest.raises(ValidationError):
        ProviderConfig.model_validate({"parameter_sets": {"paramSet1": PARAM_SET}, "parameter_set": "nope"})
