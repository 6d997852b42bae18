"""
Definition and result types for the ToggleBox SDK.

Definitions (configs, flags, experiments) are immutable once parsed. A
``Definitions`` snapshot is only ever built through
``Definitions.from_payload``, which either returns a complete snapshot or
raises ``ValidationError``.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from togglebox.errors import ValidationError

ANONYMOUS_USER_ID = "anonymous"


class ExperimentStatus(str, Enum):
    """Lifecycle status of an experiment."""

    DRAFT = "draft"
    RUNNING = "running"
    STOPPED = "stopped"


class EvaluationSource(str, Enum):
    """Why a flag resolved to its value."""

    DEFAULT = "default"  # Unknown flag, rollout 0, no user id, or outside rollout
    OFF = "off"  # Flag kill switch is off
    TARGET = "target"  # User id listed in target users
    RULE = "rule"  # A targeting rule matched
    ROLLOUT = "rollout"  # User hashed into the rollout percentage


class AssignmentMethod(str, Enum):
    """How a variation was chosen."""

    HASH = "hash"
    OVERRIDE = "override"


class EventKind(str, Enum):
    """Kinds of telemetry events."""

    EVALUATION = "evaluation"
    CONVERSION = "conversion"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Condition:
    """A single predicate over a context attribute."""

    attribute: str
    operator: str
    value: Any = None

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "Condition":
        data = _expect_mapping(data, where)
        return cls(
            attribute=_expect_str(data.get("attribute"), f"{where}.attribute"),
            operator=_expect_str(data.get("operator"), f"{where}.operator"),
            value=data.get("value"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"attribute": self.attribute, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class TargetingRule:
    """Conditions joined with AND, and the outcome when they all match."""

    id: str
    conditions: Tuple[Condition, ...] = ()
    outcome: bool = True

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "TargetingRule":
        data = _expect_mapping(data, where)
        conditions = _expect_list(data.get("conditions", []), f"{where}.conditions")
        return cls(
            id=_expect_str(data.get("id"), f"{where}.id"),
            conditions=tuple(
                Condition.from_dict(c, f"{where}.conditions[{i}]")
                for i, c in enumerate(conditions)
            ),
            outcome=_expect_bool(data.get("outcome", True), f"{where}.outcome"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conditions": [c.to_dict() for c in self.conditions],
            "outcome": self.outcome,
        }


@dataclass(frozen=True)
class Flag:
    """A boolean feature toggle with targeting rules and a rollout percentage."""

    key: str
    default_value: bool = False
    enabled: bool = True
    rollout: int = 0
    target_users: Tuple[str, ...] = ()
    rules: Tuple[TargetingRule, ...] = ()
    version: int = 0

    @classmethod
    def from_dict(cls, key: str, data: Any) -> "Flag":
        where = f"flags.{key}"
        data = _expect_mapping(data, where)
        _check_embedded_key(data, key, where)

        rollout = _expect_int(data.get("rollout", 0), f"{where}.rollout")
        if not 0 <= rollout <= 100:
            raise ValidationError(f"{where}.rollout must be between 0 and 100, got {rollout}")

        target_users = _expect_list(data.get("targetUsers", []), f"{where}.targetUsers")
        rules = _expect_list(data.get("rules", []), f"{where}.rules")

        return cls(
            key=key,
            default_value=_expect_bool(data.get("defaultValue", False), f"{where}.defaultValue"),
            enabled=_expect_bool(data.get("enabled", True), f"{where}.enabled"),
            rollout=rollout,
            target_users=tuple(
                _expect_str(u, f"{where}.targetUsers[{i}]") for i, u in enumerate(target_users)
            ),
            rules=tuple(
                TargetingRule.from_dict(r, f"{where}.rules[{i}]") for i, r in enumerate(rules)
            ),
            version=_expect_int(data.get("version", 0), f"{where}.version"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "defaultValue": self.default_value,
            "enabled": self.enabled,
            "rollout": self.rollout,
            "targetUsers": list(self.target_users),
            "rules": [r.to_dict() for r in self.rules],
            "version": self.version,
        }


@dataclass(frozen=True)
class Variation:
    """One arm of an experiment."""

    key: str
    weight: int
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "weight": self.weight, "value": self.value}


@dataclass(frozen=True)
class Experiment:
    """A multi-variant experiment with weighted variations."""

    key: str
    variations: Tuple[Variation, ...]
    status: ExperimentStatus = ExperimentStatus.DRAFT
    rules: Tuple[TargetingRule, ...] = ()
    overrides: Mapping[str, str] = field(default_factory=dict)
    version: int = 0

    @property
    def total_weight(self) -> int:
        return sum(v.weight for v in self.variations)

    def get_variation(self, variation_key: str) -> Optional[Variation]:
        for variation in self.variations:
            if variation.key == variation_key:
                return variation
        return None

    @classmethod
    def from_dict(cls, key: str, data: Any) -> "Experiment":
        where = f"experiments.{key}"
        data = _expect_mapping(data, where)
        _check_embedded_key(data, key, where)

        status_raw = _expect_str(data.get("status", "draft"), f"{where}.status")
        try:
            status = ExperimentStatus(status_raw)
        except ValueError:
            raise ValidationError(f"{where}.status has unknown value {status_raw!r}") from None

        raw_variations = _expect_list(data.get("variations"), f"{where}.variations")
        if not raw_variations:
            raise ValidationError(f"{where}.variations must not be empty")

        variations: List[Variation] = []
        for i, raw in enumerate(raw_variations):
            vwhere = f"{where}.variations[{i}]"
            raw = _expect_mapping(raw, vwhere)
            weight = _expect_int(raw.get("weight"), f"{vwhere}.weight")
            if weight < 0:
                raise ValidationError(f"{vwhere}.weight must not be negative")
            variations.append(
                Variation(
                    key=_expect_str(raw.get("key"), f"{vwhere}.key"),
                    weight=weight,
                    value=raw.get("value"),
                )
            )

        if sum(v.weight for v in variations) <= 0:
            raise ValidationError(f"{where}.variations must have a positive total weight")

        variation_keys = {v.key for v in variations}
        if len(variation_keys) != len(variations):
            raise ValidationError(f"{where}.variations contains duplicate keys")

        overrides = _expect_mapping(data.get("overrides", {}), f"{where}.overrides")
        for user_id, variation_key in overrides.items():
            if variation_key not in variation_keys:
                raise ValidationError(
                    f"{where}.overrides[{user_id!r}] references unknown variation {variation_key!r}"
                )

        rules = _expect_list(data.get("rules", []), f"{where}.rules")

        return cls(
            key=key,
            variations=tuple(variations),
            status=status,
            rules=tuple(
                TargetingRule.from_dict(r, f"{where}.rules[{i}]") for i, r in enumerate(rules)
            ),
            overrides=dict(overrides),
            version=_expect_int(data.get("version", 0), f"{where}.version"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "status": self.status.value,
            "variations": [v.to_dict() for v in self.variations],
            "rules": [r.to_dict() for r in self.rules],
            "overrides": dict(self.overrides),
            "version": self.version,
        }


@dataclass(frozen=True)
class Definitions:
    """
    Immutable snapshot of remote definitions.

    Exactly one snapshot is active in a store at a time; refreshes replace
    it wholesale.
    """

    version: str = ""
    configs: Mapping[str, Any] = field(default_factory=dict)
    flags: Mapping[str, Flag] = field(default_factory=dict)
    experiments: Mapping[str, Experiment] = field(default_factory=dict)
    fetched_at: float = 0.0

    @classmethod
    def from_payload(cls, payload: Any, fetched_at: Optional[float] = None) -> "Definitions":
        """
        Parse and validate a definitions payload.

        Raises:
            ValidationError: If any part of the payload is malformed
        """
        payload = _expect_mapping(payload, "payload")

        version = payload.get("version", "")
        if isinstance(version, bool) or not isinstance(version, (str, int)):
            raise ValidationError("payload.version must be a string or integer")

        configs = _expect_mapping(payload.get("configs", {}), "configs")
        raw_flags = _expect_mapping(payload.get("flags", {}), "flags")
        raw_experiments = _expect_mapping(payload.get("experiments", {}), "experiments")

        flags = {key: Flag.from_dict(key, data) for key, data in raw_flags.items()}
        experiments = {
            key: Experiment.from_dict(key, data) for key, data in raw_experiments.items()
        }

        return cls(
            version=str(version),
            configs=dict(configs),
            flags=flags,
            experiments=experiments,
            fetched_at=time.time() if fetched_at is None else fetched_at,
        )

    def to_payload(self) -> Dict[str, Any]:
        """Serialize back to the wire shape accepted by ``from_payload``."""
        return {
            "version": self.version,
            "configs": dict(self.configs),
            "flags": {key: flag.to_dict() for key, flag in self.flags.items()},
            "experiments": {key: exp.to_dict() for key, exp in self.experiments.items()},
        }


EMPTY_DEFINITIONS = Definitions()


@dataclass(frozen=True)
class EvaluationContext:
    """Per-call evaluation context. Never persisted."""

    user_id: str = ANONYMOUS_USER_ID
    country: Optional[str] = None
    language: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"userId": self.user_id}
        if self.country is not None:
            result["country"] = self.country
        if self.language is not None:
            result["language"] = self.language
        if self.attributes:
            result["attributes"] = dict(self.attributes)
        return result


@dataclass(frozen=True)
class FlagResult:
    """Result of a flag evaluation."""

    flag_key: str
    enabled: bool
    source: EvaluationSource
    evaluated_at: float = field(default_factory=time.time)
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "flagKey": self.flag_key,
            "enabled": self.enabled,
            "source": self.source.value,
            "evaluatedAt": self.evaluated_at,
        }
        if self.rule_id is not None:
            result["ruleId"] = self.rule_id
        return result


@dataclass(frozen=True)
class VariantAssignment:
    """The variation a user is assigned to in an experiment."""

    experiment_key: str
    variation_key: str
    value: Any
    method: AssignmentMethod

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experimentKey": self.experiment_key,
            "variationKey": self.variation_key,
            "value": self.value,
            "method": self.method.value,
        }


@dataclass
class Event:
    """A tracked interaction waiting to be flushed."""

    kind: EventKind
    key: str
    context: Dict[str, Any] = field(default_factory=dict)
    value: Optional[float] = None
    data: Optional[Dict[str, Any]] = None
    timestamp: float = field(default_factory=time.time)
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "kind": self.kind.value,
            "key": self.key,
            "context": self.context,
            "timestamp": self.timestamp,
        }
        if self.value is not None:
            result["value"] = self.value
        if self.data is not None:
            result["data"] = self.data
        return result


# Payload validation helpers


def _expect_mapping(value: Any, where: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValidationError(f"{where} must be an object, got {type(value).__name__}")
    return value


def _expect_list(value: Any, where: str) -> List[Any]:
    if not isinstance(value, list):
        raise ValidationError(f"{where} must be a list, got {type(value).__name__}")
    return value


def _expect_str(value: Any, where: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{where} must be a non-empty string")
    return value


def _expect_bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{where} must be a boolean")
    return value


def _expect_int(value: Any, where: str) -> int:
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{where} must be an integer")
    return value


def _check_embedded_key(data: Mapping[str, Any], key: str, where: str) -> None:
    embedded = data.get("key")
    if embedded is not None and embedded != key:
        raise ValidationError(f"{where}.key {embedded!r} does not match its map key")
