"""Filter Evaluator - per-event-type predicate rules.

Rules arrive from subscription configuration as loosely-typed maps:

    {"order.created": {"amount": {"min": 1000}, "customer.tier": {"in": ["gold"]}}}

They are compiled once into typed predicates and never re-parsed per event.
All conditions of a rule set must hold (AND). An event type without rules
matches everything. Numeric predicates fail closed on missing or
non-numeric fields.

Supported predicates: min, max, equals, not_equals, in, not_in, contains,
exists.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from hookrelay_protocols import ConfigurationError, Event

_MISSING = object()


# =============================================================================
# PREDICATES
# =============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class Min:
    bound: float

    def test(self, value: Any) -> bool:
        return _is_number(value) and value >= self.bound


@dataclass(frozen=True)
class Max:
    bound: float

    def test(self, value: Any) -> bool:
        return _is_number(value) and value <= self.bound


@dataclass(frozen=True)
class Equals:
    value: Any

    def test(self, value: Any) -> bool:
        return value is not _MISSING and value == self.value


@dataclass(frozen=True)
class NotEquals:
    value: Any

    def test(self, value: Any) -> bool:
        return value is _MISSING or value != self.value


@dataclass(frozen=True)
class In:
    values: Tuple[Any, ...]

    def test(self, value: Any) -> bool:
        return value is not _MISSING and value in self.values


@dataclass(frozen=True)
class NotIn:
    values: Tuple[Any, ...]

    def test(self, value: Any) -> bool:
        return value is _MISSING or value not in self.values


@dataclass(frozen=True)
class Contains:
    value: Any

    def test(self, value: Any) -> bool:
        if isinstance(value, str):
            return isinstance(self.value, str) and self.value in value
        if isinstance(value, (list, tuple)):
            return self.value in value
        return False


@dataclass(frozen=True)
class Exists:
    expected: bool

    def test(self, value: Any) -> bool:
        present = value is not _MISSING and value is not None
        return present == self.expected


FilterPredicate = Union[Min, Max, Equals, NotEquals, In, NotIn, Contains, Exists]


def _numeric(name: str, operand: Any) -> float:
    if not _is_number(operand):
        raise ConfigurationError(f"'{name}' requires a numeric operand, got {operand!r}")
    return float(operand)


def _collection(name: str, operand: Any) -> Tuple[Any, ...]:
    if not isinstance(operand, (list, tuple, set, frozenset)):
        raise ConfigurationError(f"'{name}' requires a list operand, got {operand!r}")
    return tuple(operand)


def _boolean(name: str, operand: Any) -> bool:
    if not isinstance(operand, bool):
        raise ConfigurationError(f"'{name}' requires a boolean operand, got {operand!r}")
    return operand


_BUILDERS = {
    "min": lambda operand: Min(_numeric("min", operand)),
    "max": lambda operand: Max(_numeric("max", operand)),
    "equals": Equals,
    "not_equals": NotEquals,
    "in": lambda operand: In(_collection("in", operand)),
    "not_in": lambda operand: NotIn(_collection("not_in", operand)),
    "contains": Contains,
    "exists": lambda operand: Exists(_boolean("exists", operand)),
}

SUPPORTED_PREDICATES = frozenset(_BUILDERS)


def build_predicate(name: str, operand: Any) -> FilterPredicate:
    """Build one typed predicate, rejecting unknown names."""
    builder = _BUILDERS.get(name)
    if builder is None:
        raise ConfigurationError(
            f"Unknown filter predicate '{name}' (supported: {', '.join(sorted(SUPPORTED_PREDICATES))})"
        )
    return builder(operand)


# =============================================================================
# COMPILED RULES
# =============================================================================

def resolve_path(data: Any, path: Tuple[str, ...]) -> Any:
    """Walk a dot-notation path through dicts (and list indexes)."""
    value = data
    for key in path:
        if isinstance(value, Mapping):
            if key not in value:
                return _MISSING
            value = value[key]
        elif isinstance(value, (list, tuple)) and key.isdigit():
            index = int(key)
            if index >= len(value):
                return _MISSING
            value = value[index]
        else:
            return _MISSING
    return value


@dataclass(frozen=True)
class FieldCondition:
    """A predicate bound to a payload field path."""
    path: Tuple[str, ...]
    predicate: FilterPredicate

    def holds(self, payload: Mapping[str, Any]) -> bool:
        return self.predicate.test(resolve_path(payload, self.path))


@dataclass(frozen=True)
class CompiledFilter:
    """All conditions for one event type, ANDed together.

    A filter built from malformed rules rejects every event (fail closed)
    and carries the configuration error in `error`.
    """
    conditions: Tuple[FieldCondition, ...] = ()
    error: Optional[str] = None

    @classmethod
    def reject_all(cls, error: str) -> "CompiledFilter":
        return cls(conditions=(), error=error)

    def matches(self, payload: Mapping[str, Any]) -> bool:
        if self.error is not None:
            return False
        return all(condition.holds(payload) for condition in self.conditions)


def compile_rule_set(rules: Mapping[str, Any]) -> CompiledFilter:
    """Compile the rules for a single event type.

    Raises:
        ConfigurationError: on unknown predicates or malformed operands
    """
    if not isinstance(rules, Mapping):
        raise ConfigurationError(f"Filter rules must be a mapping, got {type(rules).__name__}")

    conditions = []
    for field_path, predicates in rules.items():
        if not isinstance(field_path, str) or not field_path or "" in field_path.split("."):
            raise ConfigurationError(f"Invalid field path: {field_path!r}")
        if not isinstance(predicates, Mapping) or not predicates:
            raise ConfigurationError(f"Predicates for '{field_path}' must be a non-empty mapping")
        path = tuple(field_path.split("."))
        for name, operand in predicates.items():
            conditions.append(FieldCondition(path=path, predicate=build_predicate(name, operand)))
    return CompiledFilter(conditions=tuple(conditions))


def compile_filter_rules(
    filter_rules: Mapping[str, Mapping[str, Any]],
    *,
    strict: bool = True,
) -> Dict[str, CompiledFilter]:
    """Compile a subscription's rules for every event type.

    Args:
        filter_rules: event type -> field path -> predicate -> operand
        strict: Raise on the first malformed rule set. When False, malformed
            event types compile to a reject-all filter instead.

    Returns:
        event type -> CompiledFilter
    """
    compiled: Dict[str, CompiledFilter] = {}
    for event_type, rules in filter_rules.items():
        try:
            compiled[event_type] = compile_rule_set(rules)
        except ConfigurationError as e:
            if strict:
                raise ConfigurationError(str(e), event_type=event_type) from e
            compiled[event_type] = CompiledFilter.reject_all(str(e))
    return compiled


class FilterEvaluator:
    """Decides whether an event should reach a subscription."""

    def matches(self, event: Event, filter_rules: Mapping[str, CompiledFilter]) -> bool:
        """Evaluate compiled rules for the event's type.

        Returns:
            True when no rule exists for the type, or every condition holds
        """
        compiled = filter_rules.get(event.type)
        if compiled is None:
            return True
        return compiled.matches(event.payload)
