"""Personality provider: builds the interest vector and scores items against it."""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import structlog
from pydantic import BaseModel, ConfigDict

from .constants import (
    DEFAULT_HISTORY_LIMIT_SECS,
    DEFAULT_MAX_HISTORY_RESULTS,
    DEFAULT_TAGGER_TOPIC,
    INTEREST_VECTOR_KEY,
    UNRANKABLE_SCORE,
)
from .errors import UnknownParameterSet
from .history import HistoryProvider, HistoryQuery
from .interest_store import KeyedStore
from .model_store import ModelFamily, ModelStore, parse_model_family
from .models import (
    HistoryEntry,
    Item,
    ParameterSet,
    Recipe,
    TimeSegment,
    select_parameter_set,
    validate_time_segments,
)
from .pipeline import FailureReason, RecipeExecutor, Step, StepStrategy
from .recipe_source import RecipeSource
from .remote_settings import RemoteSettings
from .taggers import TextTagger, build_tagger


class BuildResult(BaseModel):
    """Outcome of an interest vector build."""

    model_config = ConfigDict(frozen=True)

    interest_vector: Optional[Item] = None
    reason: Optional[FailureReason] = None
    history_count: int = 0
    dropped_count: int = 0

    @property
    def ok(self) -> bool:
        return self.interest_vector is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_score(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class PersonalityProvider:
    """Owns the recipe, model, tagger and interest vector caches of one profile."""

    def __init__(
        self,
        time_segments: Sequence[TimeSegment],
        parameter_sets: Mapping[str, ParameterSet],
        *,
        remote_settings: RemoteSettings,
        history: HistoryProvider,
        interest_vector_store: KeyedStore,
        parameter_set_name: Optional[str] = None,
        strategy: Optional[StepStrategy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_history_results: int = DEFAULT_MAX_HISTORY_RESULTS,
        history_limit_secs: int = DEFAULT_HISTORY_LIMIT_SECS,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.logger = logger or structlog.get_logger(__name__)

        self.time_segments = validate_time_segments(time_segments)
        self.parameter_sets = dict(parameter_sets)
        # An explicit name is checked now; otherwise the recipe's name is used
        self._parameter_set: Optional[ParameterSet] = None
        if parameter_set_name is not None:
            self._parameter_set = select_parameter_set(self.parameter_sets, parameter_set_name)
        self.parameter_set_name = parameter_set_name

        self.remote_settings = remote_settings
        self.history = history
        self.interest_vector_store = interest_vector_store
        self.strategy = strategy
        self.clock = clock or _utcnow
        self.max_history_results = max_history_results
        self.history_limit_secs = history_limit_secs

        self.recipe_source = RecipeSource(remote_settings, logger=self.logger)
        self.model_store = ModelStore(remote_settings, logger=self.logger)
        self._taggers: Dict[Tuple[ModelFamily, str], TextTagger] = {}
        self.recipe_executor: Optional[RecipeExecutor] = None

        self._interest_vector: Optional[Item] = copy.deepcopy(interest_vector_store.get(INTEREST_VECTOR_KEY))
        self.logger.debug("provider.init", store=interest_vector_store.name,
                          preloaded=self._interest_vector is not None)

    @property
    def interest_vector(self) -> Optional[Item]:
        """A copy of the cached, finalized vector; the cache itself is never handed out."""
        return copy.deepcopy(self._interest_vector)

    @property
    def recipe(self) -> Optional[Recipe]:
        return self.recipe_source.recipe

    @recipe.setter
    def recipe(self, value: Optional[Recipe]) -> None:
        self.recipe_source.recipe = value

    # ------------------------------------------------------------------
    # Recipe, models and taggers
    # ------------------------------------------------------------------

    async def get_recipe(self) -> Recipe:
        return await self.recipe_source.get_recipe()

    async def get_model(self, family: Union[str, ModelFamily], topic: str) -> Dict[str, Any]:
        return await self.model_store.get_model(family, topic)

    async def generate_tagger(self, family: Union[str, ModelFamily], topic: str) -> TextTagger:
        """Tagger for ``(family, topic)``, built once and then reused."""
        key = (parse_model_family(family, context="generate tagger"), topic)
        tagger = self._taggers.get(key)
        if tagger is None:
            model = await self.get_model(key[0], topic)
            tagger = build_tagger(key[0], model)
            self._taggers[key] = tagger
            self.logger.debug("provider.tagger.built", family=key[0].value, topic=topic)
        return tagger

    def get_parameter_set(self, recipe: Recipe) -> ParameterSet:
        """The active parameter set; fixed the first time it is resolved."""
        if self._parameter_set is None:
            if recipe.parameter_set is None:
                if len(self.parameter_sets) != 1:
                    raise UnknownParameterSet(
                        "Recipe names no parameter set and none was selected at construction"
                    )
                self.parameter_set_name, self._parameter_set = next(iter(self.parameter_sets.items()))
            else:
                self._parameter_set = select_parameter_set(self.parameter_sets, recipe.parameter_set)
                self.parameter_set_name = recipe.parameter_set
        return self._parameter_set

    async def generate_recipe_executor(self, topic: Optional[str] = None) -> RecipeExecutor:
        """Executor for ``topic`` backed by one nb and one nmf tagger."""
        recipe = await self.get_recipe()
        topic = topic or recipe.topic or DEFAULT_TAGGER_TOPIC
        nb_tagger = await self.generate_tagger(ModelFamily.NB, topic)
        nmf_tagger = await self.generate_tagger(ModelFamily.NMF, topic)
        return RecipeExecutor(
            recipe,
            self.get_parameter_set(recipe),
            self.time_segments,
            nb_tagger=nb_tagger,
            nmf_tagger=nmf_tagger,
            strategy=self.strategy,
            clock=self.clock,
        )

    async def get_recipe_executor(self) -> RecipeExecutor:
        if self.recipe_executor is None:
            self.recipe_executor = await self.generate_recipe_executor()
        return self.recipe_executor

    async def init(self) -> Optional[Item]:
        """Load recipe and taggers, and build a vector if none is cached yet."""
        await self.get_recipe_executor()
        if self._interest_vector is None:
            await self.create_interest_vector()
        return self.interest_vector

    # ------------------------------------------------------------------
    # Interest vector
    # ------------------------------------------------------------------

    async def fetch_history(self) -> List[HistoryEntry]:
        recipe = await self.get_recipe()
        limit_secs = self.history_limit_secs
        if recipe.history_limit_secs is not None:
            limit_secs = recipe.history_limit_secs
        max_results = self.max_history_results
        if recipe.max_history_results is not None:
            max_results = recipe.max_history_results
        end = self.clock()
        query = HistoryQuery(
            begin=end - timedelta(seconds=limit_secs),
            end=end,
            max_results=max_results,
        )
        return await self.history.fetch_history(query)

    async def create_interest_vector(self) -> BuildResult:
        """
        Aggregate the whole history snapshot into a new interest vector.

        Entries the history item builder rejects are dropped. A failing
        combiner or finalizer fails the whole build, as does an empty history;
        a failed build leaves the cached vector untouched.
        """
        executor = await self.get_recipe_executor()
        history = await self.fetch_history()
        now = self.clock()
        self.logger.info("provider.build.start", history_count=len(history))

        accumulator: Optional[Item] = None
        dropped = 0
        for entry in history:
            built = executor.execute_step(entry.as_item(), Step.HISTORY_ITEM_BUILDER, now=now)
            if not built.ok:
                dropped += 1
                continue

            if accumulator is None:
                accumulator = built.item
                continue

            combined = executor.execute_combiner_step(accumulator, built.item, Step.INTEREST_COMBINER, now=now)
            if not combined.ok:
                return self._build_failed(FailureReason.COMBINER_FAILED, len(history), dropped)
            accumulator = combined.item

        if accumulator is None:
            return self._build_failed(FailureReason.EMPTY_HISTORY, len(history), dropped)

        finalized = executor.execute_step(accumulator, Step.INTEREST_FINALIZER, now=now)
        if not finalized.ok:
            return self._build_failed(FailureReason.FINALIZER_FAILED, len(history), dropped)

        # 💡: The cache, the store and the caller each get their own copy; the
        # finalized vector shares no nested state with anything handed out
        interest_vector = copy.deepcopy(finalized.item)
        await self.interest_vector_store.set(INTEREST_VECTOR_KEY, copy.deepcopy(interest_vector))
        # Single reference swap: scoring calls see the old or the new vector, never a partial one
        self._interest_vector = interest_vector

        self.logger.info("provider.build.complete", history_count=len(history),
                         dropped_count=dropped, score=interest_vector.get("score"))
        return BuildResult(
            interest_vector=copy.deepcopy(interest_vector),
            history_count=len(history),
            dropped_count=dropped,
        )

    def _build_failed(self, reason: FailureReason, history_count: int, dropped: int) -> BuildResult:
        self.logger.warning("provider.build.failed", reason=reason.value,
                            history_count=history_count, dropped_count=dropped)
        return BuildResult(reason=reason, history_count=history_count, dropped_count=dropped)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def calculate_item_relevance_score(self, item: Item) -> float:
        """
        Score a candidate item against the cached interest vector.

        Returns ``UNRANKABLE_SCORE`` (-1) when the item cannot be ranked; callers
        must exclude such items rather than treat -1 as a low score.
        """
        interest_vector = self._interest_vector
        executor = self.recipe_executor
        if interest_vector is None or executor is None:
            self.logger.debug("provider.score.unrankable", reason=FailureReason.NO_INTEREST_VECTOR.value)
            return UNRANKABLE_SCORE

        scorable = executor.execute_step(item, Step.ITEM_TO_RANK_BUILDER)
        if not scorable.ok:
            self.logger.debug("provider.score.unrankable", reason=FailureReason.BUILDER_FAILED.value)
            return UNRANKABLE_SCORE

        # Item fields overlay a copy of the vector; the executor deep-copies its input
        ranking_item = dict(interest_vector)
        ranking_item.update(scorable.item)
        ranked = executor.execute_step(ranking_item, Step.ITEM_RANKER)
        if not ranked.ok or not _is_score(ranked.item.get("score")):
            self.logger.debug("provider.score.unrankable", reason=FailureReason.RANKER_FAILED.value)
            return UNRANKABLE_SCORE

        return ranked.item["score"]
