"""
Instruction interpreter for recipe steps.

A step body is a list of instructions, each a record naming a ``function``
plus its arguments, run in order over a working copy of the item:

    [
        {"function": "require", "fields": ["title", "url"]},
        {"function": "visit_age"},
        {"function": "time_segment"},
        {"function": "copy_value", "src": "frecency", "dest": "score"},
        {"function": "scalar_multiply", "field": "score", "k": "@segment_weight"},
    ]

Argument values starting with ``$`` name a coefficient of the active
parameter set (``"$recencyFactor"``); values starting with ``@`` name a field
of the working item. Any instruction may fail, which fails the whole step.
The interpreter defines no formula of its own: all arithmetic comes from the
recipe.
"""

from __future__ import annotations

import copy
import inspect
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

import structlog

from .errors import RecipeError
from .models import Instruction, Item, ParameterSet, Recipe, find_time_segment
from .pipeline import COMBINER_STEPS, RecipeContext, Step

ItemOp = Callable[..., Optional[Item]]

ITEM_INSTRUCTIONS: Dict[str, ItemOp] = {}
COMBINER_INSTRUCTIONS: Dict[str, ItemOp] = {}

# Errors an instruction may hit on malformed input; they fail the step
STEP_ERRORS = (LookupError, TypeError, ValueError, ArithmeticError, AttributeError)


def item_instruction(name: str) -> Callable[[ItemOp], ItemOp]:
    def register(func: ItemOp) -> ItemOp:
        ITEM_INSTRUCTIONS[name] = func
        return func
    return register


def combiner_instruction(name: str) -> Callable[[ItemOp], ItemOp]:
    def register(func: ItemOp) -> ItemOp:
        COMBINER_INSTRUCTIONS[name] = func
        return func
    return register


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _scale(value: Any, k: float) -> Any:
    """Multiply a number, or every weight of a mapping, by ``k``."""
    if isinstance(value, Mapping):
        return {key: weight * k for key, weight in value.items()}
    if _is_number(value):
        return value * k
    raise TypeError(f"Cannot scale {type(value).__name__}")


def _shift(value: Any, k: float) -> Any:
    if isinstance(value, Mapping):
        return {key: weight + k for key, weight in value.items()}
    if _is_number(value):
        return value + k
    raise TypeError(f"Cannot shift {type(value).__name__}")


def _add(left: Any, right: Any) -> Any:
    """Sum two numbers, or two mappings key by key."""
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        total = dict(left)
        for key, weight in right.items():
            total[key] = total.get(key, 0.0) + weight
        return total
    if _is_number(left) and _is_number(right):
        return left + right
    raise TypeError("Cannot add values of different kinds")


def _max(left: Any, right: Any) -> Any:
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        merged = dict(left)
        for key, weight in right.items():
            merged[key] = max(merged.get(key, weight), weight)
        return merged
    if _is_number(left) and _is_number(right):
        return max(left, right)
    raise TypeError("Cannot take the maximum of values of different kinds")


# ---------------------------------------------------------------------------
# Item instructions
# ---------------------------------------------------------------------------


@item_instruction("require")
def require(item: Item, context: RecipeContext, fields: Sequence[str]) -> Optional[Item]:
    """Fail unless every field is present and non-empty."""
    for field in fields:
        value = item.get(field)
        if value is None or value == "" or value == {} or value == []:
            return None
    return item


@item_instruction("set_value")
def set_value(item: Item, context: RecipeContext, field: str, value: Any) -> Optional[Item]:
    item[field] = copy.deepcopy(value)
    return item


@item_instruction("set_default")
def set_default(item: Item, context: RecipeContext, field: str, value: Any) -> Optional[Item]:
    if item.get(field) is None:
        item[field] = copy.deepcopy(value)
    return item


@item_instruction("copy_value")
def copy_value(item: Item, context: RecipeContext, src: str, dest: str) -> Optional[Item]:
    item[dest] = item[src]
    return item


@item_instruction("keep_keys")
def keep_keys(item: Item, context: RecipeContext, keys: Sequence[str]) -> Optional[Item]:
    return {key: value for key, value in item.items() if key in keys}


@item_instruction("url_domain")
def url_domain(item: Item, context: RecipeContext, field: str = "url", dest: str = "domain") -> Optional[Item]:
    """Host of a URL without a leading ``www.``. Fails for URLs without a host."""
    host = urlparse(item[field]).hostname
    if not host:
        return None
    item[dest] = host[4:] if host.startswith("www.") else host
    return item


@item_instruction("nb_tag")
def nb_tag(item: Item, context: RecipeContext, dest: str = "nb_tags") -> Optional[Item]:
    if context.nb_tagger is None:
        return None
    item[dest] = context.nb_tagger.tag(item)
    return item


@item_instruction("nmf_tag")
def nmf_tag(item: Item, context: RecipeContext, dest: str = "nmf_tags") -> Optional[Item]:
    if context.nmf_tagger is None:
        return None
    item[dest] = context.nmf_tagger.tag(item)
    return item


@item_instruction("conditionally_nmf_tag")
def conditionally_nmf_tag(
    item: Item, context: RecipeContext, source: str = "nb_tags", dest: str = "nmf_tags"
) -> Optional[Item]:
    """Run the nmf tagger only for items the nb tagger already tagged."""
    if not item.get(source):
        item[dest] = {}
        return item
    return nmf_tag(item, context, dest=dest)


@item_instruction("visit_age")
def visit_age(
    item: Item, context: RecipeContext, field: str = "visit_timestamp", dest: str = "age_seconds"
) -> Optional[Item]:
    """Seconds between the visit and the start of the current operation."""
    visited = item[field]
    if visited is None:
        return None
    if isinstance(visited, str):
        visited = datetime.fromisoformat(visited)
    if visited.tzinfo is None:
        visited = visited.replace(tzinfo=timezone.utc)
    item[dest] = (context.now - visited).total_seconds()
    return item


@item_instruction("time_segment")
def time_segment(
    item: Item,
    context: RecipeContext,
    field: str = "age_seconds",
    dest: str = "segment",
    weight_dest: str = "segment_weight",
) -> Optional[Item]:
    """Record the recency bucket of the item. Fails when no bucket contains it."""
    segment = find_time_segment(context.time_segments, item[field])
    if segment is None:
        return None
    item[dest] = segment.id
    item[weight_dest] = segment.weight
    return item


@item_instruction("parameter")
def parameter(item: Item, context: RecipeContext, name: str, dest: str) -> Optional[Item]:
    item[dest] = context.parameter_set.lookup(name)
    return item


@item_instruction("scalar_multiply")
def scalar_multiply(item: Item, context: RecipeContext, field: str, k: float) -> Optional[Item]:
    item[field] = _scale(item[field], k)
    return item


@item_instruction("scalar_add")
def scalar_add(item: Item, context: RecipeContext, field: str, k: float) -> Optional[Item]:
    item[field] = _shift(item[field], k)
    return item


@item_instruction("ratio")
def ratio(
    item: Item,
    context: RecipeContext,
    field: str,
    denominator: float,
    dest: Optional[str] = None,
    cap: Optional[float] = None,
) -> Optional[Item]:
    """``field / denominator``, optionally capped. Used to normalise against a "perfect" value."""
    value = item[field] / denominator
    if cap is not None:
        value = min(value, cap)
    item[dest or field] = value
    return item


@item_instruction("weighted_sum")
def weighted_sum(item: Item, context: RecipeContext, terms: Mapping[str, float], dest: str) -> Optional[Item]:
    """``sum(item[field] * weight)`` over ``terms``; weights may be references."""
    total: Any = 0.0
    for field, weight in terms.items():
        total = _add(total, _scale(item[field], _resolve(weight, item, context)))
    item[dest] = total
    return item


@item_instruction("blend")
def blend(item: Item, context: RecipeContext, left: str, right: str, alpha: float, dest: str) -> Optional[Item]:
    """``alpha * left + (1 - alpha) * right``."""
    item[dest] = _add(_scale(item[left], alpha), _scale(item[right], 1 - alpha))
    return item


@item_instruction("multiply")
def multiply(item: Item, context: RecipeContext, fields: Sequence[str], dest: str) -> Optional[Item]:
    product = 1.0
    for field in fields:
        value = item[field]
        if not _is_number(value):
            return None
        product *= value
    item[dest] = product
    return item


@item_instruction("dot_product")
def dot_product(item: Item, context: RecipeContext, left: str, right: str, dest: str) -> Optional[Item]:
    """Sum of products over the keys two mappings share."""
    first, second = item[left], item[right]
    if not isinstance(first, Mapping) or not isinstance(second, Mapping):
        return None
    item[dest] = sum(weight * second[key] for key, weight in first.items() if key in second)
    return item


@item_instruction("clamp")
def clamp(
    item: Item, context: RecipeContext, field: str, low: Optional[float] = None, high: Optional[float] = None
) -> Optional[Item]:
    value = item[field]
    if low is not None:
        value = max(value, low)
    if high is not None:
        value = min(value, high)
    item[field] = value
    return item


@item_instruction("keep_top_k")
def keep_top_k(item: Item, context: RecipeContext, field: str, k: int) -> Optional[Item]:
    ranked = sorted(item[field].items(), key=lambda pair: pair[1], reverse=True)
    item[field] = dict(ranked[: int(k)])
    return item


@item_instruction("threshold")
def threshold(item: Item, context: RecipeContext, field: str, minimum: float) -> Optional[Item]:
    """Drop mapping entries weighing less than ``minimum``."""
    item[field] = {key: weight for key, weight in item[field].items() if weight >= minimum}
    return item


@item_instruction("l2_normalize")
def l2_normalize(item: Item, context: RecipeContext, field: str) -> Optional[Item]:
    weights = item[field]
    norm = math.sqrt(sum(weight * weight for weight in weights.values()))
    if norm > 0:
        item[field] = {key: weight / norm for key, weight in weights.items()}
    return item


@item_instruction("prob_normalize")
def prob_normalize(item: Item, context: RecipeContext, field: str) -> Optional[Item]:
    weights = item[field]
    total = sum(weights.values())
    if total > 0:
        item[field] = {key: weight / total for key, weight in weights.items()}
    return item


@item_instruction("count_distinct")
def count_distinct(item: Item, context: RecipeContext, field: str, dest: str) -> Optional[Item]:
    value = item.get(field)
    if value is None:
        item[dest] = 0
    elif isinstance(value, (str, bytes)):
        item[dest] = 1
    else:
        item[dest] = len(set(value))
    return item


@item_instruction("conditional_boost")
def conditional_boost(
    item: Item, context: RecipeContext, field: str, minimum: float, target: str, boost: float
) -> Optional[Item]:
    """Scale ``target`` by ``1 + boost`` when ``field`` reaches ``minimum``."""
    if item[field] >= minimum:
        item[target] = _scale(item[target], 1 + boost)
    return item


# ---------------------------------------------------------------------------
# Combiner instructions
# ---------------------------------------------------------------------------


@combiner_instruction("combine_add")
def combine_add(left: Item, right: Item, context: RecipeContext, field: str) -> Optional[Item]:
    """Sum ``field`` of both items into the left one; a missing side counts as zero."""
    if field not in left:
        left[field] = right.get(field, 0.0)
    elif field in right:
        left[field] = _add(left[field], right[field])
    return left


@combiner_instruction("combine_max")
def combine_max(left: Item, right: Item, context: RecipeContext, field: str) -> Optional[Item]:
    if field not in left:
        left[field] = right.get(field, 0.0)
    elif field in right:
        left[field] = _max(left[field], right[field])
    return left


def _collected_values(item: Item, field: str, dest: str) -> List[Any]:
    if isinstance(item.get(dest), list):
        return item[dest]
    if item.get(field) is not None:
        return [item[field]]
    return []


@combiner_instruction("combine_collect")
def combine_collect(
    left: Item, right: Item, context: RecipeContext, field: str, dest: Optional[str] = None
) -> Optional[Item]:
    """Gather the distinct values of ``field`` seen so far into the list ``dest``."""
    dest = dest or f"{field}s"
    collected: List[Any] = []
    for value in _collected_values(left, field, dest) + _collected_values(right, field, dest):
        if value not in collected:
            collected.append(value)
    left[dest] = collected
    return left


@combiner_instruction("combine_count")
def combine_count(left: Item, right: Item, context: RecipeContext, dest: str = "count") -> Optional[Item]:
    """Number of history items folded so far."""
    left[dest] = left.get(dest, 1) + right.get(dest, 1)
    return left


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


def _resolve(value: Any, item: Item, context: RecipeContext) -> Any:
    """Resolve ``$parameter`` and ``@field`` references."""
    if isinstance(value, str):
        if value.startswith("$"):
            return context.parameter_set.lookup(value[1:])
        if value.startswith("@"):
            return item[value[1:]]
    return value


def _parameter_exists(name: str) -> bool:
    fields = ParameterSet.model_fields
    return name in fields or any(info.alias == name for info in fields.values())


class InstructionInterpreter:
    """Default step strategy: runs recipe instruction lists."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        self.logger = logger or structlog.get_logger(__name__)

    def validate(self, recipe: Recipe) -> None:
        """
        Check every instruction of a recipe before anything runs.

        Raises:
            RecipeError: for unknown functions, unknown ``$`` parameters or
                arguments the function does not take
        """
        for step in Step:
            table = COMBINER_INSTRUCTIONS if step in COMBINER_STEPS else ITEM_INSTRUCTIONS
            for instruction in recipe.body_for(step):
                self._validate_instruction(step, instruction, table)

    def _validate_instruction(self, step: Step, instruction: Instruction, table: Dict[str, ItemOp]) -> None:
        name = instruction.get("function")
        func = table.get(name) if isinstance(name, str) else None
        if func is None:
            raise RecipeError(f"Unknown instruction {name!r} in {step.value}")

        args = {key: value for key, value in instruction.items() if key != "function"}
        try:
            inspect.signature(func).bind(*([None] * self._positional_count(table)), **args)
        except TypeError as e:
            raise RecipeError(f"Bad arguments for {name} in {step.value}: {e}") from None

        if name == "parameter" and not _parameter_exists(str(args.get("name"))):
            raise RecipeError(f"Unknown parameter {args.get('name')} in {step.value}")

        values = list(args.values())
        if isinstance(args.get("terms"), Mapping):
            values.extend(args["terms"].values())
        for value in values:
            if isinstance(value, str) and value.startswith("$") and not _parameter_exists(value[1:]):
                raise RecipeError(f"Unknown parameter {value} in {step.value}")

    @staticmethod
    def _positional_count(table: Dict[str, ItemOp]) -> int:
        # item + context, or left + right + context
        return 3 if table is COMBINER_INSTRUCTIONS else 2

    def apply(
        self, item: Item, body: Sequence[Instruction], context: RecipeContext, step: Step
    ) -> Optional[Item]:
        current: Optional[Item] = item
        for instruction in body:
            func = ITEM_INSTRUCTIONS[instruction["function"]]
            try:
                current = func(current, context, **self._arguments(instruction, current, context))
            except STEP_ERRORS as e:
                self.logger.debug("recipe.instruction.error", step=step.value,
                                  instruction=instruction["function"], error=str(e))
                return None
            if current is None:
                self.logger.debug("recipe.instruction.no_result", step=step.value,
                                  instruction=instruction["function"])
                return None
        return current

    def apply_pair(
        self, left: Item, right: Item, body: Sequence[Instruction], context: RecipeContext, step: Step
    ) -> Optional[Item]:
        current: Optional[Item] = left
        for instruction in body:
            func = COMBINER_INSTRUCTIONS[instruction["function"]]
            try:
                current = func(current, right, context, **self._arguments(instruction, current, context))
            except STEP_ERRORS as e:
                self.logger.debug("recipe.instruction.error", step=step.value,
                                  instruction=instruction["function"], error=str(e))
                return None
            if current is None:
                return None
        return current

    @staticmethod
    def _arguments(instruction: Instruction, item: Item, context: RecipeContext) -> Dict[str, Any]:
        # "terms" weights are resolved by weighted_sum itself
        return {
            key: value if key == "terms" else _resolve(value, item, context)
            for key, value in instruction.items()
            if key != "function"
        }
