"""Unit tests for filter rule compilation and evaluation."""

from datetime import datetime, timezone

import pytest

from hookrelay.filters import (
    CompiledFilter,
    Contains,
    Exists,
    FilterEvaluator,
    In,
    Min,
    compile_filter_rules,
    compile_rule_set,
    resolve_path,
)
from hookrelay_protocols import ConfigurationError, Event

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _event(payload, type="order.created"):
    return Event(id="evt_1", type=type, payload=payload, created_at=NOW)


def _matches(rules, payload, type="order.created"):
    return FilterEvaluator().matches(_event(payload, type), compile_filter_rules(rules))


# =============================================================================
# CORE PREDICATES
# =============================================================================


def test_min_rule_matches_and_rejects():
    rules = {"order.created": {"amount": {"min": 1000}}}

    assert _matches(rules, {"amount": 1500})
    assert _matches(rules, {"amount": 1000})
    assert not _matches(rules, {"amount": 500})
    assert not _matches(rules, {})


@pytest.mark.parametrize("value", ["1500", None, True, [1500], {"v": 1500}])
def test_numeric_predicates_fail_closed_on_non_numbers(value):
    assert not _matches({"order.created": {"amount": {"min": 0}}}, {"amount": value})
    assert not _matches({"order.created": {"amount": {"max": 10**9}}}, {"amount": value})


def test_max_rule():
    rules = {"order.created": {"amount": {"max": 100}}}

    assert _matches(rules, {"amount": 99.5})
    assert not _matches(rules, {"amount": 101})


def test_equals_and_in():
    rules = {"order.created": {
        "currency": {"equals": "EUR"},
        "customer.tier": {"in": ["gold", "platinum"]},
    }}

    assert _matches(rules, {"currency": "EUR", "customer": {"tier": "gold"}})
    assert not _matches(rules, {"currency": "USD", "customer": {"tier": "gold"}})
    assert not _matches(rules, {"currency": "EUR", "customer": {"tier": "bronze"}})
    assert not _matches(rules, {"currency": "EUR"})


def test_all_conditions_are_anded():
    rules = {"order.created": {"amount": {"min": 10, "max": 20}}}

    assert _matches(rules, {"amount": 15})
    assert not _matches(rules, {"amount": 25})


def test_no_rule_for_event_type_matches_everything():
    rules = {"order.created": {"amount": {"min": 1000}}}

    assert _matches(rules, {"amount": 1}, type="order.paid")
    assert _matches({}, {"anything": True})


# =============================================================================
# EXTENDED PREDICATES
# =============================================================================


def test_not_equals_and_not_in():
    rules = {"order.created": {
        "status": {"not_equals": "test"},
        "country": {"not_in": ["XX", "YY"]},
    }}

    assert _matches(rules, {"status": "live", "country": "DE"})
    assert _matches(rules, {})
    assert not _matches(rules, {"status": "test", "country": "DE"})
    assert not _matches(rules, {"status": "live", "country": "XX"})


def test_contains_on_strings_and_lists():
    rules = {"order.created": {"note": {"contains": "gift"}, "tags": {"contains": "vip"}}}

    assert _matches(rules, {"note": "a gift for you", "tags": ["vip", "new"]})
    assert not _matches(rules, {"note": "plain", "tags": ["vip"]})
    assert not _matches(rules, {"note": "a gift", "tags": ["new"]})
    assert not _matches(rules, {"note": 42, "tags": ["vip"]})


def test_exists():
    present = {"order.created": {"coupon": {"exists": True}}}
    absent = {"order.created": {"coupon": {"exists": False}}}

    assert _matches(present, {"coupon": "SAVE10"})
    assert not _matches(present, {"coupon": None})
    assert not _matches(present, {})
    assert _matches(absent, {})


def test_list_index_paths():
    assert resolve_path({"items": [{"sku": "A"}, {"sku": "B"}]}, ("items", "1", "sku")) == "B"
    assert not _matches({"order.created": {"items.5.sku": {"equals": "A"}}}, {"items": [{"sku": "A"}]})


# =============================================================================
# COMPILATION
# =============================================================================


def test_compiles_into_typed_predicates():
    compiled = compile_rule_set({"amount": {"min": 5}, "tags": {"contains": "x", "in": ["a"]}})

    predicates = [condition.predicate for condition in compiled.conditions]
    assert Min(5.0) in predicates
    assert Contains("x") in predicates
    assert In(("a",)) in predicates


@pytest.mark.parametrize("rules", [
    {"amount": {"between": [1, 2]}},
    {"amount": {"min": "ten"}},
    {"amount": {"in": "gold"}},
    {"amount": {"exists": "yes"}},
    {"amount": {}},
    {"": {"min": 1}},
    {"a..b": {"min": 1}},
    ["not", "a", "mapping"],
])
def test_malformed_rules_rejected_at_configuration_time(rules):
    with pytest.raises(ConfigurationError):
        compile_rule_set(rules)


def test_strict_compilation_reports_event_type():
    with pytest.raises(ConfigurationError) as exc_info:
        compile_filter_rules({"order.created": {"amount": {"bogus": 1}}})

    assert exc_info.value.event_type == "order.created"
    assert "bogus" in str(exc_info.value)


def test_lenient_compilation_fails_closed_for_that_type_only():
    compiled = compile_filter_rules(
        {
            "order.created": {"amount": {"bogus": 1}},
            "order.paid": {"amount": {"min": 1}},
        },
        strict=False,
    )

    assert compiled["order.created"].error is not None
    assert not compiled["order.created"].matches({"amount": 100})
    assert compiled["order.paid"].matches({"amount": 100})


def test_reject_all_filter():
    assert not CompiledFilter.reject_all("broken").matches({})


def test_exists_requires_boolean_operand():
    assert compile_rule_set({"x": {"exists": False}}).conditions[0].predicate == Exists(False)
