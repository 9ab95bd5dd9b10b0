"""Data models for the personality provider."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidTimeSegments, UnknownParameterSet

Item = Dict[str, Any]
"""A recipe record. Opaque to the engine apart from ``type`` and ``score``."""

Instruction = Dict[str, Any]
"""One instruction of a recipe step: ``{"function": name, ...args}``."""


class TimeSegment(BaseModel):
    """A bucket of "seconds since visit" with its recency weight."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Name of the bucket, e.g. 'hour' or 'week'")
    start_offset_seconds: Optional[int] = Field(
        default=None,
        ge=0,
        description="Newer bound in seconds ago (inclusive). None means now.",
    )
    end_offset_seconds: Optional[int] = Field(
        default=None,
        ge=0,
        description="Older bound in seconds ago (exclusive). None means unbounded past.",
    )
    weight: float = Field(description="Recency weight applied to visits in this bucket")

    @classmethod
    def from_legacy(cls, record: Mapping[str, Any]) -> TimeSegment:
        """
        Build a segment from the ``{id, startTime, endTime, weightPosition}`` shape.

        In that shape ``startTime`` is the older bound and ``endTime`` the newer
        one, both in seconds ago, with ``null`` meaning unbounded.
        """
        newer = record.get("endTime")
        return cls(
            id=record["id"],
            start_offset_seconds=newer or None,
            end_offset_seconds=record.get("startTime"),
            weight=record["weightPosition"],
        )

    @property
    def lower_bound(self) -> int:
        return self.start_offset_seconds or 0

    def contains(self, age_seconds: float) -> bool:
        """Whether a visit ``age_seconds`` old falls in this bucket."""
        if age_seconds < self.lower_bound:
            return False
        return self.end_offset_seconds is None or age_seconds < self.end_offset_seconds


def parse_time_segments(records: Sequence[Mapping[str, Any]]) -> List[TimeSegment]:
    """Parse time segment records, accepting either the native or the legacy shape."""
    segments = []
    for record in records:
        if "weightPosition" in record:
            segments.append(TimeSegment.from_legacy(record))
        else:
            segments.append(TimeSegment.model_validate(record))
    return validate_time_segments(segments)


def validate_time_segments(segments: Sequence[TimeSegment]) -> List[TimeSegment]:
    """
    Check that segments cover the whole non-negative time axis.

    Segments must be ordered most recent first, contiguous, start at now, end in
    the unbounded past and have non-increasing weights.

    Raises:
        InvalidTimeSegments: if any of those conditions does not hold
    """
    if not segments:
        raise InvalidTimeSegments("At least one time segment is required")

    if segments[0].lower_bound != 0:
        raise InvalidTimeSegments(f"First time segment must start now, got {segments[0].id}")

    for newer, older in zip(segments, segments[1:]):
        if newer.end_offset_seconds is None:
            raise InvalidTimeSegments(f"Time segment {newer.id} is unbounded but not last")
        if newer.end_offset_seconds != older.lower_bound:
            raise InvalidTimeSegments(
                f"Time segments {newer.id} and {older.id} leave a gap or overlap"
            )
        if older.weight > newer.weight:
            raise InvalidTimeSegments(
                f"Time segment {older.id} weighs more than the more recent {newer.id}"
            )

    last = segments[-1]
    if last.end_offset_seconds is not None:
        raise InvalidTimeSegments(f"Last time segment {last.id} must be unbounded")

    for segment in segments:
        if segment.end_offset_seconds is not None and segment.end_offset_seconds <= segment.lower_bound:
            raise InvalidTimeSegments(f"Time segment {segment.id} is empty")

    return list(segments)


def find_time_segment(segments: Sequence[TimeSegment], age_seconds: float) -> Optional[TimeSegment]:
    """Return the segment containing ``age_seconds``, or None (e.g. visits in the future)."""
    for segment in segments:
        if segment.contains(age_seconds):
            return segment
    return None


class ParameterSet(BaseModel):
    """Named bundle of coefficients tuning the history aggregation recipe."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    recency_factor: float = Field(alias="recencyFactor")
    frequency_factor: float = Field(alias="frequencyFactor")
    combined_domain_factor: float = Field(alias="combinedDomainFactor")
    perfect_frequency_visits: float = Field(alias="perfectFrequencyVisits")
    perfect_combined_domain_score: float = Field(alias="perfectCombinedDomainScore")
    multi_domain_boost: float = Field(alias="multiDomainBoost")
    item_score_factor: float = Field(alias="itemScoreFactor")

    def lookup(self, name: str) -> float:
        """
        Look up a coefficient by either its snake_case or camelCase name.

        Raises:
            KeyError: if the name is not a coefficient
        """
        if name in type(self).model_fields:
            return getattr(self, name)
        for field_name, info in type(self).model_fields.items():
            if info.alias == name:
                return getattr(self, field_name)
        raise KeyError(name)


def select_parameter_set(parameter_sets: Mapping[str, ParameterSet], name: str) -> ParameterSet:
    """Return the parameter set called ``name``."""
    try:
        return parameter_sets[name]
    except KeyError:
        raise UnknownParameterSet(
            f"Personality provider received unexpected parameter set: {name}"
        ) from None


class HistoryEntry(BaseModel):
    """One page from the user's browsing history. Read-only input."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(default="", description="Page title")
    description: str = Field(default="", description="Page description or excerpt")
    url: str = Field(default="", description="Page URL")
    frecency: float = Field(default=0.0, description="Frequency/recency score from the history store")
    visit_timestamp: Optional[datetime] = Field(
        default=None,
        description="When the page was last visited",
    )
    visit_count: int = Field(default=1, ge=0, description="Number of recorded visits")

    def as_item(self) -> Item:
        """Fresh pipeline record for this entry."""
        return self.model_dump()


class Recipe(BaseModel):
    """
    The active recipe: one instruction list per pipeline step.

    Step bodies are opaque to the engine. An empty body leaves the item as it is.
    """

    history_item_builder: List[Instruction] = Field(default_factory=list)
    interest_finalizer: List[Instruction] = Field(default_factory=list)
    item_to_rank_builder: List[Instruction] = Field(default_factory=list)
    item_ranker: List[Instruction] = Field(default_factory=list)
    interest_combiner: List[Instruction] = Field(default_factory=list)
    parameter_set: Optional[str] = Field(
        default=None,
        description="Name of the parameter set this recipe was tuned for",
    )
    topic: Optional[str] = Field(
        default=None,
        description="Topic of the nb/nmf tagger models used by this recipe",
    )
    history_limit_secs: Optional[int] = Field(
        default=None,
        ge=0,
        description="How far back history is read for this recipe",
    )
    max_history_results: Optional[int] = Field(
        default=None,
        ge=0,
        description="Maximum number of history entries to aggregate",
    )

    def body_for(self, step: Any) -> List[Instruction]:
        """Instruction list for a pipeline step (a ``Step`` or its name)."""
        return getattr(self, getattr(step, "value", step))
