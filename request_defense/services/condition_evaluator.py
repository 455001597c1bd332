"""
Weighted condition scoring.

Each condition resolves a dot-path field from event data, applies its
operator and scores 0 or 100. Two aggregations exist and they are not
interchangeable:

* ``mean_matched_score``: weighted mean of condition scores over the
  matched conditions only. Used by threat patterns, which trigger above 70.
* ``sum_matched_score``: plain sum of matched weights. Used by alert rule
  conditions, which pass at 50 or more with at least one match.

With two 50-weight conditions and only one matching, the mean is 100 while
the sum is 50.
"""

from dataclasses import dataclass
from numbers import Number
from typing import Any, Dict, Iterable, List, Optional

import regex
from loguru import logger

from request_defense.models.security import ConditionOperator, WeightedCondition

MATCH_SCORE = 100.0
THREAT_PATTERN_THRESHOLD = 70.0
ALERT_CONDITION_THRESHOLD = 50.0
CONDITION_REGEX_TIMEOUT = 0.05

MISSING = object()

_regex_cache: Dict[str, Any] = {}


@dataclass
class ConditionScore:
    """Aggregated score plus how many conditions matched."""
    score: float
    matched: int
    total: int


def resolve_field(data: Any, path: str) -> Any:
    """Walk ``a.b.c`` through nested mappings or attributes.

    Returns ``MISSING`` when any segment is absent or the value is None.
    """
    current = data
    for part in path.split("."):
        if current is None:
            return MISSING
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return MISSING
    return MISSING if current is None else current


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _to_number(value: Any) -> Optional[float]:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _strict_equals(actual: Any, expected: Any) -> bool:
    if _is_number(actual) and _is_number(expected):
        return actual == expected
    if type(actual) is not type(expected):
        return False
    return actual == expected


def _compiled(pattern: str):
    compiled = _regex_cache.get(pattern)
    if compiled is None:
        compiled = regex.compile(pattern, regex.IGNORECASE)
        _regex_cache[pattern] = compiled
    return compiled


def _regex_test(actual: Any, pattern: Any) -> bool:
    try:
        return _compiled(str(pattern)).search(str(actual), timeout=CONDITION_REGEX_TIMEOUT) is not None
    except regex.error as e:
        logger.warning(f"Invalid condition regex {pattern!r}: {e}")
        return False
    except TimeoutError:
        logger.warning(f"Condition regex {pattern!r} timed out; treating as no match")
        return False


def _in_range(actual: Any, bounds: Any) -> bool:
    if isinstance(bounds, dict):
        low, high = bounds.get("min"), bounds.get("max")
    elif isinstance(bounds, (list, tuple)) and len(bounds) == 2:
        low, high = bounds
    else:
        return False
    number, low, high = _to_number(actual), _to_number(low), _to_number(high)
    if number is None or low is None or high is None:
        return False
    return low <= number <= high


def evaluate_condition(actual: Any, condition: WeightedCondition) -> float:
    """Score one resolved value: 100 on match, 0 otherwise."""
    if actual is MISSING:
        return 0.0

    op = condition.operator
    expected = condition.value

    if op == ConditionOperator.EQUALS:
        matched = _strict_equals(actual, expected)
    elif op == ConditionOperator.CONTAINS:
        matched = str(expected).lower() in str(actual).lower()
    elif op == ConditionOperator.REGEX:
        matched = _regex_test(actual, expected)
    elif op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        number, bound = _to_number(actual), _to_number(expected)
        if number is None or bound is None:
            matched = False
        elif op == ConditionOperator.GREATER_THAN:
            matched = number > bound
        else:
            matched = number < bound
    elif op == ConditionOperator.IN_RANGE:
        matched = _in_range(actual, expected)
    else:
        matched = False

    return MATCH_SCORE if matched else 0.0


def _matched(conditions: Iterable[WeightedCondition], data: Any) -> List[WeightedCondition]:
    return [
        condition for condition in conditions
        if evaluate_condition(resolve_field(data, condition.field), condition) > 0
    ]


def mean_matched_score(conditions: List[WeightedCondition], data: Any) -> ConditionScore:
    """Weighted mean of condition scores over matched conditions."""
    matched = _matched(conditions, data)
    total_weight = sum(c.weight for c in matched)
    if not matched or total_weight <= 0:
        return ConditionScore(score=0.0, matched=len(matched), total=len(conditions))
    score = sum(MATCH_SCORE * c.weight for c in matched) / total_weight
    return ConditionScore(score=score, matched=len(matched), total=len(conditions))


def sum_matched_score(conditions: List[WeightedCondition], data: Any) -> ConditionScore:
    """Sum of the weights of matched conditions."""
    matched = _matched(conditions, data)
    return ConditionScore(
        score=float(sum(c.weight for c in matched)),
        matched=len(matched),
        total=len(conditions),
    )


def pattern_triggers(score: ConditionScore, threshold: float = THREAT_PATTERN_THRESHOLD) -> bool:
    return score.matched > 0 and score.score > threshold


def alert_conditions_met(score: ConditionScore, threshold: float = ALERT_CONDITION_THRESHOLD) -> bool:
    return score.matched > 0 and score.score >= threshold
