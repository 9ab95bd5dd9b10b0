"""Integration tests for PersonalityProvider with a scripted recipe strategy."""

import copy

import pytest

from personality.constants import INTEREST_VECTOR_KEY, RECIPE_SETTINGS_KEY, UNRANKABLE_SCORE
from personality.errors import InvalidModelFamily, UnknownParameterSet
from personality.mocks import (
    ClockController,
    FailingHistory,
    InMemoryHistory,
    InMemoryInterestVectorStore,
    InMemoryRemoteSettings,
)
from personality.models import HistoryEntry, ParameterSet, Recipe, parse_time_segments
from personality.pipeline import FailureReason, Step
from personality.provider import PersonalityProvider
from personality.taggers import NaiveBayesTextTagger, NmfTextTagger

TIME_SEGMENTS = parse_time_segments([
    {"id": "hour", "startTime": 3600, "endTime": 0, "weightPosition": 1},
    {"id": "day", "startTime": 86400, "endTime": 3600, "weightPosition": 0.75},
    {"id": "week", "startTime": 604800, "endTime": 86400, "weightPosition": 0.5},
    {"id": "weekPlus", "startTime": None, "endTime": 604800, "weightPosition": 0.25},
])

PARAMETER_SETS = {
    "paramSet1": ParameterSet.model_validate({
        "recencyFactor": 0.5,
        "frequencyFactor": 0.5,
        "combinedDomainFactor": 0.5,
        "perfectFrequencyVisits": 10,
        "perfectCombinedDomainScore": 2,
        "multiDomainBoost": 0.1,
        "itemScoreFactor": 0,
    }),
    "paramSet2": ParameterSet.model_validate({
        "recencyFactor": 1,
        "frequencyFactor": 0.7,
        "combinedDomainFactor": 0.8,
        "perfectFrequencyVisits": 10,
        "perfectCombinedDomainScore": 2,
        "multiDomainBoost": 0.1,
        "itemScoreFactor": 0,
    }),
}


class ScriptedStrategy:
    """Step logic keyed by step, standing in for real recipes."""

    def __init__(self, finalizer_fails=False):
        self.finalizer_fails = finalizer_fails

    def validate(self, recipe):
        pass

    def apply(self, item, body, context, step):
        if step is Step.HISTORY_ITEM_BUILDER:
            if item.get("title") == "fail":
                return None
            return {"title": item["title"], "score": item["frecency"], "type": "history_item"}
        if step is Step.INTEREST_FINALIZER:
            if self.finalizer_fails:
                return None
            return {"title": item.get("title"), "score": item["score"] * 100, "type": "interest_vector"}
        if step is Step.ITEM_TO_RANK_BUILDER:
            if item.get("title") == "fail":
                return None
            return {"title": item.get("title"), "item_score": item.get("score"), "type": "item_to_rank"}
        if step is Step.ITEM_RANKER:
            if item.get("item_score") is None:
                return None
            return {"title": item.get("title"), "score": item["item_score"] * item["score"], "type": "ranked_item"}
        return None

    def apply_pair(self, left, right, body, context, step):
        if left.get("title") == "combiner_fail" or right.get("title") == "combiner_fail":
            return None
        left.setdefault("type", "combined_iv")
        left.setdefault("score", 0)
        return {"type": left["type"], "score": left["score"] + right["score"]}


def mock_history():
    return [
        HistoryEntry(title="automotive", description="something about automotive",
                     url="http://example.com/automotive", frecency=10),
        HistoryEntry(title="fashion", description="something about fashion",
                     url="http://example.com/fashion", frecency=5),
        HistoryEntry(title="tech", description="something about tech",
                     url="http://example.com/tech", frecency=1),
    ]


class TestPersonalityProvider:
    """Provider behavior against in-memory collaborators."""

    def setup_method(self):
        self.remote_settings = InMemoryRemoteSettings({
            RECIPE_SETTINGS_KEY: {"parameter_set": "paramSet1", "topic": "sports"},
        })
        self.history = InMemoryHistory(mock_history())
        self.store = InMemoryInterestVectorStore()
        self.clock = ClockController()
        self.provider = self.make_provider()

    def make_provider(self, **kwargs):
        options = dict(
            remote_settings=self.remote_settings,
            history=self.history,
            interest_vector_store=self.store,
            strategy=ScriptedStrategy(),
            clock=self.clock,
        )
        options.update(kwargs)
        return PersonalityProvider(TIME_SEGMENTS, PARAMETER_SETS, **options)

    # interest vector store

    def test_has_an_interest_vector_store(self):
        assert self.provider.interest_vector_store.name == "interest-vector"

    def test_preloads_the_persisted_vector(self):
        store = InMemoryInterestVectorStore({INTEREST_VECTOR_KEY: {"score": 7}})
        provider = self.make_provider(interest_vector_store=store)
        assert provider.interest_vector == {"score": 7}

    # models

    async def test_get_model_rejects_unknown_family(self):
        with pytest.raises(InvalidModelFamily) as excinfo:
            await self.provider.get_model("nothing", "sports")
        assert str(excinfo.value) == "Personality provider received unexpected model for get model: nothing"

    async def test_get_model_fetches_once_per_family_and_topic(self):
        assert self.provider.model_store.cached_keys == []

        first = await self.provider.get_model("nmf", "sports")
        second = await self.provider.get_model("nmf", "sports")
        await self.provider.get_model("nb", "sports")

        assert first is second
        assert self.remote_settings.fetch_count("personality-provider-models-nmf-sports") == 1
        assert self.remote_settings.fetch_count("personality-provider-models-nb-sports") == 1

    async def test_get_model_fetches_each_topic_independently(self):
        await self.provider.get_model("nb", "sports")
        await self.provider.get_model("nb", "news")

        assert self.remote_settings.fetch_count("personality-provider-models-nb-sports") == 1
        assert self.remote_settings.fetch_count("personality-provider-models-nb-news") == 1

    # taggers

    async def test_generate_tagger_rejects_unknown_family(self):
        with pytest.raises(InvalidModelFamily) as excinfo:
            await self.provider.generate_tagger("nothing", "sports")
        assert str(excinfo.value) == "Personality provider received unexpected model for generate tagger: nothing"

    async def test_generate_tagger_nb(self):
        tagger = await self.provider.generate_tagger("nb", "sports")

        assert isinstance(tagger, NaiveBayesTextTagger)
        assert self.remote_settings.fetches == ["personality-provider-models-nb-sports"]

    async def test_generate_tagger_nmf(self):
        tagger = await self.provider.generate_tagger("nmf", "sports")

        assert isinstance(tagger, NmfTextTagger)
        assert self.remote_settings.fetches == ["personality-provider-models-nmf-sports"]

    async def test_generate_tagger_is_memoized(self):
        first = await self.provider.generate_tagger("nb", "sports")
        second = await self.provider.generate_tagger("nb", "sports")
        other = await self.provider.generate_tagger("nb", "news")

        assert first is second
        assert other is not first
        assert len(self.remote_settings.fetches) == 2

    # recipe

    async def test_get_recipe_fetches_on_first_call(self):
        recipe = await self.provider.get_recipe()

        assert recipe.parameter_set == "paramSet1"
        assert self.remote_settings.fetches == [RECIPE_SETTINGS_KEY]

    async def test_get_recipe_uses_the_cache(self):
        self.provider.recipe = Recipe()
        await self.provider.get_recipe()
        await self.provider.get_recipe()

        assert self.remote_settings.fetches == []

    async def test_get_recipe_fetches_once_until_reset(self):
        await self.provider.get_recipe()
        await self.provider.get_recipe()
        assert self.remote_settings.fetch_count(RECIPE_SETTINGS_KEY) == 1

        self.provider.recipe_source.reset()
        await self.provider.get_recipe()
        assert self.remote_settings.fetch_count(RECIPE_SETTINGS_KEY) == 2

    async def test_generate_recipe_executor_builds_one_tagger_per_family(self):
        executor = await self.provider.generate_recipe_executor("sports")

        assert self.remote_settings.fetches == [
            RECIPE_SETTINGS_KEY,
            "personality-provider-models-nb-sports",
            "personality-provider-models-nmf-sports",
        ]
        assert isinstance(executor.nb_tagger, NaiveBayesTextTagger)
        assert isinstance(executor.nmf_tagger, NmfTextTagger)
        assert executor.parameter_set == PARAMETER_SETS["paramSet1"]

    # parameter sets

    def test_unknown_parameter_set_fails_at_construction(self):
        with pytest.raises(UnknownParameterSet):
            self.make_provider(parameter_set_name="paramSet9")

    async def test_explicit_parameter_set_wins_over_recipe(self):
        provider = self.make_provider(parameter_set_name="paramSet2")
        executor = await provider.get_recipe_executor()
        assert executor.parameter_set == PARAMETER_SETS["paramSet2"]

    async def test_recipe_naming_unknown_parameter_set_fails(self):
        self.remote_settings.records[RECIPE_SETTINGS_KEY] = {"parameter_set": "paramSet9"}
        with pytest.raises(UnknownParameterSet):
            await self.provider.get_recipe_executor()

    # createInterestVector

    async def test_process_history_combine_and_finalize(self):
        result = await self.provider.create_interest_vector()

        assert result.ok
        assert result.interest_vector["score"] == 1600
        assert result.interest_vector["type"] == "interest_vector"
        assert self.provider.interest_vector == result.interest_vector
        assert self.provider.interest_vector is not result.interest_vector
        assert self.store.get(INTEREST_VECTOR_KEY) == result.interest_vector

    async def test_interest_vector_is_immutable_once_finalized(self):
        result = await self.provider.create_interest_vector()

        result.interest_vector["score"] = 0
        self.provider.interest_vector["score"] = 0
        self.store.get(INTEREST_VECTOR_KEY)["score"] = 0

        assert self.provider.interest_vector["score"] == 1600
        assert self.provider.calculate_item_relevance_score({"score": 2}) == 3200

    async def test_preloaded_vector_is_not_shared_with_the_store(self):
        store = InMemoryInterestVectorStore({INTEREST_VECTOR_KEY: {"score": 10, "tags": {"a": 1.0}}})
        provider = self.make_provider(interest_vector_store=store)

        store.get(INTEREST_VECTOR_KEY)["tags"]["a"] = 999.0

        assert provider.interest_vector == {"score": 10, "tags": {"a": 1.0}}

    async def test_gracefully_handles_history_entries_that_fail(self):
        self.history.entries.append(HistoryEntry(title="fail"))

        result = await self.provider.create_interest_vector()

        assert result.ok
        assert result.interest_vector["score"] == 1600
        assert result.dropped_count == 1

    async def test_fails_if_the_combiner_fails(self):
        self.history.entries.append(HistoryEntry(title="combiner_fail", frecency=111))

        result = await self.provider.create_interest_vector()

        assert not result.ok
        assert result.interest_vector is None
        assert result.reason is FailureReason.COMBINER_FAILED
        assert self.store.writes == []

    async def test_failed_build_keeps_previous_vector(self):
        store = InMemoryInterestVectorStore({INTEREST_VECTOR_KEY: {"score": 5}})
        provider = self.make_provider(interest_vector_store=store)
        previous = provider.interest_vector
        self.history.entries.append(HistoryEntry(title="combiner_fail", frecency=111))

        result = await provider.create_interest_vector()

        assert not result.ok
        assert provider.interest_vector == previous
        assert store.get(INTEREST_VECTOR_KEY) == {"score": 5}

    async def test_finalizer_failure_fails_the_build(self):
        provider = self.make_provider(strategy=ScriptedStrategy(finalizer_fails=True))

        result = await provider.create_interest_vector()

        assert result.reason is FailureReason.FINALIZER_FAILED
        assert provider.interest_vector is None

    async def test_empty_history_is_distinct_from_combiner_failure(self):
        self.history.entries = []

        result = await self.provider.create_interest_vector()

        assert not result.ok
        assert result.reason is FailureReason.EMPTY_HISTORY
        assert self.provider.interest_vector is None

    async def test_history_with_only_failing_entries_is_empty(self):
        self.history.entries = [HistoryEntry(title="fail"), HistoryEntry(title="fail")]

        result = await self.provider.create_interest_vector()

        assert result.reason is FailureReason.EMPTY_HISTORY
        assert result.dropped_count == 2

    async def test_single_entry_is_finalized_without_combining(self):
        self.history.entries = mock_history()[:1]

        result = await self.provider.create_interest_vector()

        assert result.interest_vector["score"] == 1000

    async def test_history_failure_propagates(self):
        provider = self.make_provider(history=FailingHistory(OSError("places unavailable")))

        with pytest.raises(OSError):
            await provider.create_interest_vector()
        assert provider.interest_vector is None

    async def test_history_query_uses_provider_limits(self):
        provider = self.make_provider(max_history_results=50, history_limit_secs=3600)

        await provider.create_interest_vector()

        query = self.history.queries[-1]
        assert query.max_results == 50
        assert query.end == self.clock.now
        assert (query.end - query.begin).total_seconds() == 3600

    async def test_history_query_honours_zero_limits_from_the_recipe(self):
        self.remote_settings.records[RECIPE_SETTINGS_KEY] = {
            "parameter_set": "paramSet1",
            "history_limit_secs": 0,
            "max_history_results": 0,
        }

        await self.provider.create_interest_vector()

        query = self.history.queries[-1]
        assert query.begin == query.end
        assert query.max_results == 0

    async def test_init_builds_a_vector_when_none_is_cached(self):
        vector = await self.provider.init()

        assert vector["score"] == 1600
        assert self.provider.recipe_executor is not None

    async def test_init_keeps_a_cached_vector(self):
        store = InMemoryInterestVectorStore({INTEREST_VECTOR_KEY: {"score": 5}})
        provider = self.make_provider(interest_vector_store=store)

        vector = await provider.init()

        assert vector == {"score": 5}
        assert self.history.queries == []

    # calculateItemRelevanceScore

    async def test_returns_minus_one_for_busted_item(self):
        await self.provider.create_interest_vector()
        before = copy.deepcopy(self.provider.interest_vector)

        assert self.provider.calculate_item_relevance_score({"title": "fail"}) == UNRANKABLE_SCORE == -1
        assert self.provider.interest_vector == before

    async def test_returns_a_score_and_does_not_change_the_interest_vector(self):
        store = InMemoryInterestVectorStore({INTEREST_VECTOR_KEY: {"score": 10}})
        provider = self.make_provider(interest_vector_store=store)
        await provider.get_recipe_executor()

        assert provider.calculate_item_relevance_score({"score": 2}) == 20
        assert provider.interest_vector == {"score": 10}

    async def test_ranker_failure_returns_minus_one(self):
        store = InMemoryInterestVectorStore({INTEREST_VECTOR_KEY: {"score": 10}})
        provider = self.make_provider(interest_vector_store=store)
        await provider.get_recipe_executor()

        # 💡: No item score means nothing to multiply
        assert provider.calculate_item_relevance_score({"title": "no score"}) == -1
        assert provider.interest_vector == {"score": 10}

    def test_returns_minus_one_without_an_interest_vector(self):
        assert self.provider.calculate_item_relevance_score({"score": 2}) == -1
