"""Tests for flag evaluation and experiment assignment."""

import pytest

from togglebox.evaluate import (
    Evaluator,
    assign_variant,
    bucket,
    evaluate_flag,
    fnv1a_32,
    is_in_rollout,
)
from togglebox.models import (
    AssignmentMethod,
    Condition,
    Definitions,
    EvaluationContext,
    EvaluationSource,
    Experiment,
    ExperimentStatus,
    Flag,
    TargetingRule,
    Variation,
)


@pytest.fixture
def user():
    """Create a test evaluation context."""
    return EvaluationContext(
        user_id="user-123",
        country="DE",
        language="de",
        attributes={"plan": "pro", "email": "test@example.com", "age": 25, "version": "1.2.3"},
    )


def make_experiment(weights, status=ExperimentStatus.RUNNING, **kwargs):
    return Experiment(
        key="exp",
        variations=tuple(Variation(key=f"v{i}", weight=w, value=i) for i, w in enumerate(weights)),
        status=status,
        **kwargs,
    )


class TestHash:
    """Tests for the stable hash."""

    def test_fnv1a_known_vectors(self):
        """Hash must match the published FNV-1a 32-bit vectors."""
        assert fnv1a_32("") == 0x811C9DC5
        assert fnv1a_32("a") == 0xE40C292C
        assert fnv1a_32("foobar") == 0xBF9CF968

    def test_bucket_in_range(self):
        for i in range(200):
            assert 0 <= bucket("flag", f"user-{i}", 100) < 100

    def test_rollout_roughly_uniform(self):
        """About half the users should land in a 50% rollout."""
        inside = sum(is_in_rollout("flag", f"user-{i}", 50) for i in range(1000))
        assert 300 < inside < 700


class TestEvaluateFlag:
    """Tests for evaluate_flag function."""

    def test_unknown_flag_returns_caller_default(self, user):
        result = evaluate_flag(None, user, default_value=True, flag_key="missing")
        assert result.enabled is True
        assert result.source == EvaluationSource.DEFAULT
        assert result.flag_key == "missing"

    def test_disabled_flag_returns_flag_default(self, user):
        flag = Flag(key="f", enabled=False, default_value=True, rollout=0)
        result = evaluate_flag(flag, user)
        assert result.enabled is True
        assert result.source == EvaluationSource.OFF

    def test_rollout_100_enables_every_user(self):
        """Rollout 100 without rules is on for any user id."""
        flag = Flag(key="f", rollout=100)
        for i in range(100):
            result = evaluate_flag(flag, EvaluationContext(user_id=f"u{i}"))
            assert result.enabled is True
            assert result.source == EvaluationSource.ROLLOUT

    def test_rollout_0_returns_default(self):
        """Rollout 0 without a matching rule always yields the flag default."""
        for default in (True, False):
            flag = Flag(key="f", rollout=0, default_value=default)
            for i in range(50):
                result = evaluate_flag(flag, EvaluationContext(user_id=f"u{i}"))
                assert result.enabled is default
                assert result.source == EvaluationSource.DEFAULT

    def test_no_user_id_returns_default(self):
        flag = Flag(key="f", rollout=50, default_value=False)
        result = evaluate_flag(flag, EvaluationContext(user_id=""))
        assert result.enabled is False
        assert result.source == EvaluationSource.DEFAULT

    def test_partial_rollout_is_deterministic(self):
        flag = Flag(key="f", rollout=30)
        ctx = EvaluationContext(user_id="user-77")
        first = evaluate_flag(flag, ctx).enabled
        assert all(evaluate_flag(flag, ctx).enabled is first for _ in range(20))
        assert first is is_in_rollout("f", "user-77", 30)

    def test_target_user(self, user):
        """Targeted user gets true even with 0% rollout."""
        flag = Flag(key="f", rollout=0, target_users=("user-123", "user-456"))
        assert evaluate_flag(flag, user).source == EvaluationSource.TARGET
        assert evaluate_flag(flag, EvaluationContext(user_id="user-999")).enabled is False

    def test_first_matching_rule_wins(self, user):
        flag = Flag(
            key="f",
            rollout=100,
            rules=(
                TargetingRule(
                    id="block-de",
                    conditions=(Condition("country", "equals", "de"),),
                    outcome=False,
                ),
                TargetingRule(
                    id="allow-pro",
                    conditions=(Condition("plan", "equals", "pro"),),
                    outcome=True,
                ),
            ),
        )
        result = evaluate_flag(flag, user)
        assert result.enabled is False
        assert result.source == EvaluationSource.RULE
        assert result.rule_id == "block-de"

    def test_rule_requires_all_conditions(self, user):
        rule = TargetingRule(
            id="r",
            conditions=(
                Condition("country", "equals", "DE"),
                Condition("plan", "equals", "free"),
            ),
        )
        flag = Flag(key="f", rollout=0, rules=(rule,))
        assert evaluate_flag(flag, user).source == EvaluationSource.DEFAULT

    def test_rule_without_conditions_never_matches(self, user):
        flag = Flag(key="f", rollout=0, rules=(TargetingRule(id="empty"),))
        assert evaluate_flag(flag, user).source == EvaluationSource.DEFAULT


class TestConditionOperators:
    """Tests for condition operators."""

    @pytest.fixture
    def check(self, user):
        """Evaluate a single-condition rule against the user."""
        def _check(operator, cond_value, attr_name="plan"):
            flag = Flag(
                key="test",
                rollout=0,
                rules=(
                    TargetingRule(
                        id="rule-1",
                        conditions=(Condition(attr_name, operator, cond_value),),
                    ),
                ),
            )
            return evaluate_flag(flag, user).enabled
        return _check

    def test_equals(self, check):
        assert check("equals", "PRO") is True
        assert check("equals", "free") is False

    def test_not_equals(self, check):
        assert check("not_equals", "free") is True
        assert check("not_equals", "pro") is False

    def test_contains(self, check):
        assert check("contains", "example", "email") is True
        assert check("not_contains", "example", "email") is False

    def test_starts_and_ends_with(self, check):
        assert check("starts_with", "test", "email") is True
        assert check("ends_with", ".org", "email") is False

    def test_in_accepts_list_or_csv(self, check):
        assert check("in", ["free", "pro"]) is True
        assert check("in", "free, pro") is True
        assert check("not_in", "free,team") is True

    def test_numeric(self, check):
        assert check("greater_than", "18", "age") is True
        assert check("less_equal", 25, "age") is True
        assert check("less_than", "abc", "age") is False

    def test_semver(self, check):
        assert check("semver_gt", "1.2.0", "version") is True
        assert check("semver_lt", "v1.10", "version") is True
        assert check("semver_eq", "1.2.3.0", "version") is True

    def test_regex(self, check):
        assert check("regex", r"^test@", "email") is True
        assert check("regex", "[", "email") is False

    def test_is_set(self, check):
        assert check("is_set", None, "plan") is True
        assert check("is_not_set", None, "missing") is True
        assert check("equals", "x", "missing") is False

    def test_builtin_attributes(self, check):
        assert check("equals", "user-123", "userId") is True
        assert check("equals", "de", "language") is True

    def test_unknown_operator_never_matches(self, check):
        assert check("approximately", "pro") is False


class TestAssignVariant:
    """Tests for experiment assignment."""

    def test_assignment_is_stable(self):
        """Repeated assignment for the same user returns the same variation."""
        experiment = make_experiment([34, 33, 33])
        for i in range(50):
            ctx = EvaluationContext(user_id=f"user-{i}")
            first = assign_variant(experiment, ctx)
            for _ in range(5):
                assert assign_variant(experiment, ctx).variation_key == first.variation_key

    def test_assignment_matches_bucket(self):
        experiment = make_experiment([50, 50])
        ctx = EvaluationContext(user_id="user-5")
        expected = "v0" if bucket("exp", "user-5", 100) < 50 else "v1"
        assert assign_variant(experiment, ctx).variation_key == expected

    def test_zero_weight_variation_never_chosen(self):
        experiment = make_experiment([0, 100])
        for i in range(100):
            result = assign_variant(experiment, EvaluationContext(user_id=f"u{i}"))
            assert result.variation_key == "v1"
            assert result.method == AssignmentMethod.HASH
            assert result.value == 1

    def test_all_variations_reachable(self):
        experiment = make_experiment([1, 1, 1])
        seen = {
            assign_variant(experiment, EvaluationContext(user_id=f"user-{i}")).variation_key
            for i in range(300)
        }
        assert seen == {"v0", "v1", "v2"}

    @pytest.mark.parametrize("status", [ExperimentStatus.DRAFT, ExperimentStatus.STOPPED])
    def test_not_running_returns_none(self, status):
        experiment = make_experiment([1, 1], status=status)
        assert assign_variant(experiment, EvaluationContext(user_id="u")) is None

    def test_unknown_experiment_returns_none(self):
        assert assign_variant(None, EvaluationContext(user_id="u")) is None

    def test_override(self):
        experiment = make_experiment([100, 0], overrides={"qa-user": "v1"})
        result = assign_variant(experiment, EvaluationContext(user_id="qa-user"))
        assert result.variation_key == "v1"
        assert result.method == AssignmentMethod.OVERRIDE

    def test_targeting_rules_limit_audience(self):
        rules = (
            TargetingRule(
                id="only-fr",
                conditions=(Condition("country", "equals", "FR"),),
                outcome=True,
            ),
        )
        experiment = make_experiment([1, 1], rules=rules)
        assert assign_variant(experiment, EvaluationContext(user_id="u", country="FR")) is not None
        assert assign_variant(experiment, EvaluationContext(user_id="u", country="DE")) is None

    def test_exclusion_rule(self):
        rules = (
            TargetingRule(
                id="no-staff",
                conditions=(Condition("staff", "equals", "true"),),
                outcome=False,
            ),
            TargetingRule(id="everyone", conditions=(Condition("userId", "is_set"),)),
        )
        experiment = make_experiment([1, 1], rules=rules)
        staff = EvaluationContext(user_id="u", attributes={"staff": True})
        assert assign_variant(experiment, staff) is None
        assert assign_variant(experiment, EvaluationContext(user_id="u")) is not None


class TestEvaluator:
    """Tests for the snapshot-bound Evaluator."""

    def test_evaluate_and_assign(self, payload):
        evaluator = Evaluator(Definitions.from_payload(payload))
        ctx = EvaluationContext(user_id="user-1", country="DE")

        assert evaluator.evaluate("new-checkout", ctx).enabled is True
        assert evaluator.evaluate("beta-banner", ctx).source == EvaluationSource.RULE
        assert evaluator.evaluate("missing", ctx, default_value=True).enabled is True
        assert evaluator.assign("pricing-page", ctx).variation_key in ("control", "discount")
        assert evaluator.assign("paused", ctx) is None
        assert evaluator.assign("missing", ctx) is None

    def test_evaluate_all(self, payload):
        evaluator = Evaluator(Definitions.from_payload(payload))
        result = evaluator.evaluate_all(EvaluationContext(user_id="user-1", country="US"))
        assert result == {"new-checkout": True, "beta-banner": False}
