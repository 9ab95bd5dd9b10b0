"""Provider configuration: time segments, parameter sets and history limits."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import DEFAULT_HISTORY_LIMIT_SECS, DEFAULT_MAX_HISTORY_RESULTS, DEFAULT_TIME_SEGMENTS
from .models import ParameterSet, TimeSegment, parse_time_segments, select_parameter_set


class ProviderConfig(BaseModel):
    """Settings a provider is constructed with."""

    time_segments: List[TimeSegment] = Field(
        default_factory=lambda: parse_time_segments(DEFAULT_TIME_SEGMENTS),
        description="Recency buckets, most recent first",
    )
    parameter_sets: Dict[str, ParameterSet] = Field(
        default_factory=dict,
        description="Named coefficient bundles",
    )
    parameter_set: Optional[str] = Field(
        default=None,
        description="Active parameter set; the recipe's choice is used when unset",
    )
    max_history_results: int = Field(default=DEFAULT_MAX_HISTORY_RESULTS, ge=0)
    history_limit_secs: int = Field(default=DEFAULT_HISTORY_LIMIT_SECS, ge=0)

    @field_validator("time_segments", mode="before")
    @classmethod
    def _parse_segments(cls, value: Any) -> Any:
        # Accept the legacy {startTime, endTime, weightPosition} shape as well
        if isinstance(value, list) and all(isinstance(record, dict) for record in value):
            return parse_time_segments(value)
        return value

    @model_validator(mode="after")
    def _check_parameter_set(self) -> ProviderConfig:
        if self.parameter_set is not None:
            select_parameter_set(self.parameter_sets, self.parameter_set)
        return self


def load_config(path: Optional[Path]) -> ProviderConfig:
    """Read a ``ProviderConfig`` from a JSON file; defaults when no path is given."""
    if path is None:
        return ProviderConfig()
    with open(path, "r") as f:
        return ProviderConfig.model_validate(json.load(f))
