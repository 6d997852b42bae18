"""
Flag evaluation and experiment assignment.

Pure functions over a definitions snapshot: no I/O and no randomness, so the
same (key, user id, definition) always produces the same answer, in this
process or any other.
"""

import re
from typing import Any, Dict, List, Optional

from togglebox.models import (
    AssignmentMethod,
    Condition,
    Definitions,
    EMPTY_DEFINITIONS,
    EvaluationContext,
    EvaluationSource,
    Experiment,
    ExperimentStatus,
    Flag,
    FlagResult,
    TargetingRule,
    VariantAssignment,
)

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193

# Changing the hash reshuffles every existing assignment.
HASH_VERSION = 1


def fnv1a_32(data: str) -> int:
    """32-bit FNV-1a hash of the UTF-8 encoding of ``data``."""
    h = FNV_OFFSET_BASIS
    for byte in data.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h


def bucket(key: str, user_id: str, buckets: int) -> int:
    """Map ``key:user_id`` onto ``[0, buckets)``."""
    return fnv1a_32(f"{key}:{user_id}") % buckets


def is_in_rollout(flag_key: str, user_id: str, percentage: int) -> bool:
    """Whether the user falls inside the first ``percentage`` of 100 buckets."""
    return bucket(flag_key, user_id, 100) < percentage


def evaluate_flag(
    flag: Optional[Flag],
    context: EvaluationContext,
    default_value: bool = False,
    flag_key: Optional[str] = None,
) -> FlagResult:
    """
    Evaluate a flag for a context.

    Evaluation priority:
    1. Unknown flag: the caller's default
    2. Disabled flag: the flag's default
    3. User in target users: true
    4. First matching targeting rule: that rule's outcome
    5. Rollout 0 or no user id: the flag's default
    6. User hashed into the rollout: true, otherwise the flag's default
    """
    if flag is None:
        return FlagResult(
            flag_key=flag_key or "",
            enabled=default_value,
            source=EvaluationSource.DEFAULT,
        )

    if not flag.enabled:
        return FlagResult(flag.key, flag.default_value, EvaluationSource.OFF)

    user_id = context.user_id
    if user_id and user_id in flag.target_users:
        return FlagResult(flag.key, True, EvaluationSource.TARGET)

    rule = first_matching_rule(flag.rules, context)
    if rule is not None:
        return FlagResult(flag.key, rule.outcome, EvaluationSource.RULE, rule_id=rule.id)

    if flag.rollout <= 0 or not user_id:
        return FlagResult(flag.key, flag.default_value, EvaluationSource.DEFAULT)

    if flag.rollout >= 100 or is_in_rollout(flag.key, user_id, flag.rollout):
        return FlagResult(flag.key, True, EvaluationSource.ROLLOUT)

    return FlagResult(flag.key, flag.default_value, EvaluationSource.DEFAULT)


def assign_variant(
    experiment: Optional[Experiment],
    context: EvaluationContext,
) -> Optional[VariantAssignment]:
    """
    Assign a user to an experiment variation.

    Returns None when the experiment is unknown, not running, or the context
    is outside its audience.
    """
    if experiment is None or experiment.status != ExperimentStatus.RUNNING:
        return None

    user_id = context.user_id
    override_key = experiment.overrides.get(user_id) if user_id else None
    if override_key is not None:
        variation = experiment.get_variation(override_key)
        if variation is not None:
            return VariantAssignment(
                experiment_key=experiment.key,
                variation_key=variation.key,
                value=variation.value,
                method=AssignmentMethod.OVERRIDE,
            )

    if experiment.rules:
        rule = first_matching_rule(experiment.rules, context)
        if rule is None or not rule.outcome:
            return None

    total = experiment.total_weight
    if total <= 0 or not user_id:
        return None

    point = bucket(experiment.key, user_id, total)
    cumulative = 0
    for variation in experiment.variations:
        cumulative += variation.weight
        if point < cumulative:
            return VariantAssignment(
                experiment_key=experiment.key,
                variation_key=variation.key,
                value=variation.value,
                method=AssignmentMethod.HASH,
            )

    # Unreachable while total_weight > 0
    return None


def first_matching_rule(
    rules: "tuple[TargetingRule, ...]",
    context: EvaluationContext,
) -> Optional[TargetingRule]:
    """Return the first rule, in declaration order, whose conditions all match."""
    for rule in rules:
        if matches_rule(rule, context):
            return rule
    return None


def matches_rule(rule: TargetingRule, context: EvaluationContext) -> bool:
    """
    Check if a context matches a targeting rule.
    All conditions within a rule must match (AND logic).
    """
    if not rule.conditions:
        return False

    for condition in rule.conditions:
        if not matches_condition(condition, context):
            return False
    return True


def matches_condition(condition: Condition, context: EvaluationContext) -> bool:
    """Check if a context matches a single condition."""
    attr_value = get_attribute_value(condition.attribute, context)
    exists = attr_value is not None and str(attr_value) != ""

    if condition.operator == "is_set":
        return exists
    if condition.operator == "is_not_set":
        return not exists

    # Every other operator needs a value to compare
    if not exists:
        return False

    value = str(attr_value).lower()
    cond_value = _condition_text(condition.value)

    if condition.operator == "equals":
        return value == cond_value
    elif condition.operator == "not_equals":
        return value != cond_value
    elif condition.operator == "contains":
        return cond_value in value
    elif condition.operator == "not_contains":
        return cond_value not in value
    elif condition.operator == "starts_with":
        return value.startswith(cond_value)
    elif condition.operator == "ends_with":
        return value.endswith(cond_value)
    elif condition.operator == "in":
        return value in _condition_list(condition.value)
    elif condition.operator == "not_in":
        return value not in _condition_list(condition.value)
    elif condition.operator == "greater_than":
        return _compare_numeric(attr_value, condition.value, ">")
    elif condition.operator == "greater_equal":
        return _compare_numeric(attr_value, condition.value, ">=")
    elif condition.operator == "less_than":
        return _compare_numeric(attr_value, condition.value, "<")
    elif condition.operator == "less_equal":
        return _compare_numeric(attr_value, condition.value, "<=")
    elif condition.operator == "regex":
        try:
            return bool(re.match(str(condition.value), str(attr_value)))
        except re.error:
            return False
    elif condition.operator == "semver_gt":
        return _compare_semver(str(attr_value), str(condition.value), ">")
    elif condition.operator == "semver_lt":
        return _compare_semver(str(attr_value), str(condition.value), "<")
    elif condition.operator == "semver_eq":
        return _compare_semver(str(attr_value), str(condition.value), "=")
    else:
        return False


def get_attribute_value(attribute: str, context: EvaluationContext) -> Any:
    """Get an attribute value from an evaluation context."""
    if attribute in ("user_id", "userId", "id"):
        return context.user_id
    elif attribute == "country":
        return context.country
    elif attribute == "language":
        return context.language
    return context.attributes.get(attribute)


def _condition_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).lower()


def _condition_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip().lower() for v in value]
    return [v.strip().lower() for v in _condition_text(value).split(",")]


def _compare_numeric(attr_val: Any, cond_val: Any, op: str) -> bool:
    """Compare two numeric values."""
    try:
        a = float(str(attr_val))
        b = float(str(cond_val))
    except (ValueError, TypeError):
        return False

    if op == ">":
        return a > b
    elif op == ">=":
        return a >= b
    elif op == "<":
        return a < b
    elif op == "<=":
        return a <= b
    return False


def _compare_semver(attr_val: str, cond_val: str, op: str) -> bool:
    """Compare two semantic versions."""
    a = _parse_version(attr_val)
    b = _parse_version(cond_val)
    if a is None or b is None:
        return False

    while len(a) < len(b):
        a.append(0)
    while len(b) < len(a):
        b.append(0)

    for i in range(len(a)):
        if a[i] > b[i]:
            return op in (">", ">=")
        if a[i] < b[i]:
            return op in ("<", "<=")

    return op in ("=", ">=", "<=")


def _parse_version(v: str) -> Optional[List[int]]:
    """Parse a semantic version string."""
    clean = v.lstrip("v")
    parts = clean.split(".")
    try:
        return [int(p) for p in parts]
    except ValueError:
        return None


class Evaluator:
    """
    Evaluates flags and experiments against one definitions snapshot.

    Example:
        ```python
        evaluator = Evaluator(store.snapshot)
        result = evaluator.evaluate("new-checkout", EvaluationContext(user_id="42"))
        variant = evaluator.assign("pricing-page", EvaluationContext(user_id="42"))
        ```
    """

    def __init__(self, definitions: Definitions = EMPTY_DEFINITIONS):
        self._definitions = definitions

    @property
    def definitions(self) -> Definitions:
        return self._definitions

    def evaluate(
        self,
        flag_key: str,
        context: EvaluationContext,
        default_value: bool = False,
    ) -> FlagResult:
        """Evaluate a single flag. Unknown keys resolve to ``default_value``."""
        flag = self._definitions.flags.get(flag_key)
        return evaluate_flag(flag, context, default_value, flag_key=flag_key)

    def assign(self, experiment_key: str, context: EvaluationContext) -> Optional[VariantAssignment]:
        """Assign a variation. Unknown keys resolve to None."""
        return assign_variant(self._definitions.experiments.get(experiment_key), context)

    def evaluate_all(self, context: EvaluationContext) -> Dict[str, bool]:
        """Evaluate every flag in the snapshot."""
        return {
            key: evaluate_flag(flag, context).enabled
            for key, flag in self._definitions.flags.items()
        }
