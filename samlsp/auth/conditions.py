# samlsp/auth/conditions.py
"""
Authorization conditions evaluated against SAML assertions.

A condition is declared once, when routes are built, and compiled into a
predicate over the assertions of the current request:

- "authenticated": the user has logged in via SAML
- "all":           always permitted
- "none":          never permitted
- a mapping:       every key/value must be present in the assertions,
                   e.g. {"lastName": {"Jackson"}}
- a callable:      fn(assertions | None) -> bool

Assertions are normalized so that multi-valued attributes are sets, which
makes the mapping comparison independent of attribute order.
"""

from collections.abc import Callable, Mapping, Set
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from samlsp.auth.errors import AuthorizationDenied, ConfigurationError

Predicate = Callable[["AssertionSet | None"], bool]


def normalize(structure: Any) -> Any:
    """Recursively turn sequences into frozensets and mappings into dicts."""
    if isinstance(structure, Mapping):
        return {k: normalize(v) for k, v in structure.items()}
    if isinstance(structure, (list, tuple, Set)):
        return frozenset(normalize(v) for v in structure)
    return structure


def is_submap(sub: Mapping, sup: Mapping) -> bool:
    """Is every key/value pair of `sub` present in `sup`? Nested maps recurse."""
    for key, expected in sub.items():
        if key not in sup:
            return False
        actual = sup[key]
        if isinstance(expected, Mapping):
            if not isinstance(actual, Mapping) or not is_submap(expected, actual):
                return False
        elif expected != actual:
            return False
    return True


class AssertionSet(Mapping):
    """
    Read-only view of the attributes asserted by the IdP for one login.

    Behaves as a mapping from attribute name to a frozenset of values. The
    `condition` slot is reserved for a development-time override and is not
    part of the mapping.
    """

    def __init__(
        self,
        attributes: Mapping | None = None,
        name_id: str | None = None,
        name_id_format: str | None = None,
        session_index: str | None = None,
        condition: "Condition | None" = None,
    ):
        self._attributes = normalize(dict(attributes or {}))
        self.name_id = name_id
        self.name_id_format = name_id_format
        self.session_index = session_index
        self.condition = condition

    @classmethod
    def from_structure(cls, structure: Mapping) -> "AssertionSet":
        """Flatten the nested structure produced by the SAML toolkit."""
        name_id = structure.get("name_id") or {}
        return cls(
            attributes=structure.get("attributes") or {},
            name_id=name_id.get("value"),
            name_id_format=name_id.get("format"),
            session_index=structure.get("session_index"),
        )

    def with_condition(self, condition: "Condition | None") -> "AssertionSet":
        return AssertionSet(
            self._attributes,
            name_id=self.name_id,
            name_id_format=self.name_id_format,
            session_index=self.session_index,
            condition=condition,
        )

    def to_dict(self) -> dict:
        """JSON-friendly rendering, used by the echo endpoints."""
        return {
            "name_id": self.name_id,
            "name_id_format": self.name_id_format,
            "session_index": self.session_index,
            "attributes": _jsonable(self._attributes),
        }

    def __getitem__(self, key):
        return self._attributes[key]

    def __iter__(self):
        return iter(self._attributes)

    def __len__(self):
        return len(self._attributes)

    def __repr__(self):
        return f"AssertionSet(name_id={self.name_id!r}, attributes={self._attributes!r})"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (frozenset, set)):
        return sorted(_jsonable(v) for v in value)
    return value


class ConditionKind(str, Enum):
    AUTHENTICATED = "authenticated"
    ALL = "all"
    NONE = "none"
    SUBSET = "subset"
    PREDICATE = "predicate"


@dataclass(frozen=True)
class Condition:
    """A parsed, compiled authorization condition."""

    kind: ConditionKind
    value: Any = None
    test: Predicate = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "test", _compile(self.kind, self.value))

    @classmethod
    def parse(cls, spec: Any) -> "Condition":
        """
        Build a Condition from its configuration form.

        Raises ConfigurationError for anything that is not a known keyword,
        a mapping or a callable.
        """
        if isinstance(spec, Condition):
            return spec
        if isinstance(spec, str):
            try:
                kind = ConditionKind(spec.lower().lstrip(":"))
            except ValueError:
                raise ConfigurationError(f"Invalid condition: {spec!r}")
            if kind in (ConditionKind.SUBSET, ConditionKind.PREDICATE):
                raise ConfigurationError(f"Invalid condition: {spec!r}")
            return cls(kind)
        if isinstance(spec, Mapping):
            return cls(ConditionKind.SUBSET, normalize(spec))
        if callable(spec):
            return cls(ConditionKind.PREDICATE, spec)
        raise ConfigurationError(f"Invalid condition: {spec!r}")

    def __str__(self):
        if self.kind is ConditionKind.PREDICATE:
            return getattr(self.value, "__name__", "predicate")
        if self.kind is ConditionKind.SUBSET:
            return f"subset({_jsonable(self.value)})"
        return self.kind.value


def _compile(kind: ConditionKind, value: Any) -> Predicate:
    if kind is ConditionKind.AUTHENTICATED:
        return lambda assertions: assertions is not None
    if kind is ConditionKind.ALL:
        return lambda assertions: True
    if kind is ConditionKind.NONE:
        return lambda assertions: False
    if kind is ConditionKind.SUBSET:
        if not isinstance(value, Mapping):
            raise ConfigurationError(f"Invalid subset condition: {value!r}")
        return lambda assertions: assertions is not None and is_submap(value, assertions)
    if kind is ConditionKind.PREDICATE:
        if not callable(value):
            raise ConfigurationError(f"Invalid predicate condition: {value!r}")
        return lambda assertions: bool(value(assertions))
    raise ConfigurationError(f"Invalid condition kind: {kind!r}")


AUTHENTICATED = Condition(ConditionKind.AUTHENTICATED)
ALL = Condition(ConditionKind.ALL)
NONE = Condition(ConditionKind.NONE)


def effective_condition(condition: Condition, assertions: AssertionSet | None) -> Condition:
    """An override carried by the assertions takes precedence."""
    if assertions is not None and assertions.condition is not None:
        return Condition.parse(assertions.condition)
    return condition


def permitted(condition: Any, assertions: AssertionSet | None) -> bool:
    condition = Condition.parse(condition)
    return effective_condition(condition, assertions).test(assertions)


def require(condition: Any, assertions: AssertionSet | None) -> AuthorizationDenied | None:
    """Return the denial for `assertions`, or None when access is permitted."""
    condition = Condition.parse(condition)
    if permitted(condition, assertions):
        return None
    return AuthorizationDenied(condition)


def evaluate(condition: Any, assertions: AssertionSet | None, on_permit, on_deny=None):
    """
    Inline permission check.

    Calls (or returns, if not callable) `on_permit` when the assertions satisfy
    the condition and `on_deny` otherwise.
    """
    branch = on_permit if permitted(condition, assertions) else on_deny
    return branch() if callable(branch) else branch
