"""Recipe pipeline: dispatches named steps to a strategy and propagates failure."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .models import Instruction, Item, ParameterSet, Recipe, TimeSegment
from .taggers import TextTagger


class Step(str, Enum):
    """The pipeline steps a recipe defines."""

    HISTORY_ITEM_BUILDER = "history_item_builder"
    INTEREST_FINALIZER = "interest_finalizer"
    ITEM_TO_RANK_BUILDER = "item_to_rank_builder"
    ITEM_RANKER = "item_ranker"
    INTEREST_COMBINER = "interest_combiner"


COMBINER_STEPS = frozenset({Step.INTEREST_COMBINER})


class FailureReason(str, Enum):
    """Why a step or an enclosing operation produced no result."""

    STEP_FAILED = "step_failed"
    EMPTY_HISTORY = "empty_history"
    COMBINER_FAILED = "combiner_failed"
    FINALIZER_FAILED = "finalizer_failed"
    BUILDER_FAILED = "builder_failed"
    RANKER_FAILED = "ranker_failed"
    NO_INTEREST_VECTOR = "no_interest_vector"


class StepResult(BaseModel):
    """Outcome of one step: the transformed item, or the reason there is none."""

    model_config = ConfigDict(frozen=True)

    step: Step
    item: Optional[Item] = None
    reason: Optional[FailureReason] = None

    @classmethod
    def success(cls, step: Step, item: Item) -> StepResult:
        return cls(step=step, item=item)

    @classmethod
    def failure(cls, step: Step, reason: FailureReason = FailureReason.STEP_FAILED) -> StepResult:
        return cls(step=step, reason=reason)

    @property
    def ok(self) -> bool:
        return self.item is not None


class RecipeContext(BaseModel):
    """Everything a step may read besides the item itself. Never mutated."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    parameter_set: ParameterSet
    time_segments: List[TimeSegment]
    nb_tagger: Optional[Any] = Field(default=None, description="Tagger of the nb family")
    nmf_tagger: Optional[Any] = Field(default=None, description="Tagger of the nmf family")
    now: datetime


class StepStrategy(Protocol):
    """The business logic behind recipe steps.

    Implementations must behave as pure functions: they may fail by returning
    None but must not touch shared state.
    """

    def validate(self, recipe: Recipe) -> None:
        """Reject a recipe this strategy cannot run (raise ``RecipeError``)."""
        ...

    def apply(
        self, item: Item, body: Sequence[Instruction], context: RecipeContext, step: Step
    ) -> Optional[Item]:
        """Run a single-item step."""
        ...

    def apply_pair(
        self, left: Item, right: Item, body: Sequence[Instruction], context: RecipeContext, step: Step
    ) -> Optional[Item]:
        """Run a combiner step merging ``right`` into ``left``."""
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecipeExecutor:
    """Runs recipe steps against items.

    The executor only selects the step body and hands it to the strategy
    together with the context; it does not look inside recipes. Items passed
    in are never modified, the strategy works on deep copies.
    """

    def __init__(
        self,
        recipe: Recipe,
        parameter_set: ParameterSet,
        time_segments: Sequence[TimeSegment],
        nb_tagger: Optional[TextTagger] = None,
        nmf_tagger: Optional[TextTagger] = None,
        strategy: Optional[StepStrategy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if strategy is None:
            from .instructions import InstructionInterpreter
            strategy = InstructionInterpreter()
        strategy.validate(recipe)

        self.recipe = recipe
        self.parameter_set = parameter_set
        self.time_segments = list(time_segments)
        self.nb_tagger = nb_tagger
        self.nmf_tagger = nmf_tagger
        self.strategy = strategy
        self.clock = clock or _utcnow

    def context(self, now: Optional[datetime] = None) -> RecipeContext:
        """Context for one operation; pass ``now`` to share it across many steps."""
        return RecipeContext(
            parameter_set=self.parameter_set,
            time_segments=self.time_segments,
            nb_tagger=self.nb_tagger,
            nmf_tagger=self.nmf_tagger,
            now=now or self.clock(),
        )

    def execute_step(self, item: Item, step: Step, now: Optional[datetime] = None) -> StepResult:
        """Run a single-item step. A missing result is reported, not raised."""
        step = Step(step)
        if step in COMBINER_STEPS:
            raise ValueError(f"{step.value} is a combiner step")

        result = self.strategy.apply(
            copy.deepcopy(item), self.recipe.body_for(step), self.context(now), step
        )
        if result is None:
            return StepResult.failure(step)
        return StepResult.success(step, result)

    def execute_combiner_step(
        self, left: Item, right: Item, step: Step = Step.INTEREST_COMBINER, now: Optional[datetime] = None
    ) -> StepResult:
        """Run a combiner step merging two items into a new one."""
        step = Step(step)
        if step not in COMBINER_STEPS:
            raise ValueError(f"{step.value} is not a combiner step")

        result = self.strategy.apply_pair(
            copy.deepcopy(left),
            copy.deepcopy(right),
            self.recipe.body_for(step),
            self.context(now),
            step,
        )
        if result is None:
            return StepResult.failure(step)
        return StepResult.success(step, result)
