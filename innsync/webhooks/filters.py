"""Endpoint filter conditions evaluated against event bodies.

Each operator is its own model so the condition list is a tagged union
discriminated on ``operator``. Field paths are dotted lookups into the JSON
body; a missing path resolves to ``MISSING`` and fails every operator.
"""

import json
import math
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class _Missing:
    """Sentinel for a path that does not resolve."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def resolve_path(body: Any, path: str) -> Any:
    """Resolve a dotted path against a JSON-like value.

    Dict keys are looked up by name; list elements by integer index.

    Args:
        body: Event body.
        path: Dotted path such as "booking.guest.vip" or "rooms.0.roomId".

    Returns:
        The value at the path, or MISSING.
    """
    current = body
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def stringify(value: Any) -> str:
    """Stringify a JSON value the way it reads on the wire."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return str(value)


def to_number(value: Any) -> float | None:
    """Coerce a JSON value to a finite number, or None when it is not numeric."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


class _Condition(BaseModel):
    field: str = Field(..., min_length=1, description="Dotted field path")

    def matches(self, body: dict[str, Any]) -> bool:
        actual = resolve_path(body, self.field)
        if actual is MISSING:
            return False
        return self._test(actual)

    def _test(self, actual: Any) -> bool:
        raise NotImplementedError


class EqualsCondition(_Condition):
    operator: Literal["equals"] = "equals"
    value: Any = None

    def _test(self, actual: Any) -> bool:
        return bool(actual == self.value)


class NotEqualsCondition(_Condition):
    operator: Literal["not_equals"] = "not_equals"
    value: Any = None

    def _test(self, actual: Any) -> bool:
        return bool(actual != self.value)


class ContainsCondition(_Condition):
    operator: Literal["contains"] = "contains"
    value: Any = None

    def _test(self, actual: Any) -> bool:
        return stringify(self.value) in stringify(actual)


class NotContainsCondition(_Condition):
    operator: Literal["not_contains"] = "not_contains"
    value: Any = None

    def _test(self, actual: Any) -> bool:
        return stringify(self.value) not in stringify(actual)


class GreaterThanCondition(_Condition):
    operator: Literal["greater_than"] = "greater_than"
    value: Any = None

    def _test(self, actual: Any) -> bool:
        left, right = to_number(actual), to_number(self.value)
        if left is None or right is None:
            return False
        return left > right


class LessThanCondition(_Condition):
    operator: Literal["less_than"] = "less_than"
    value: Any = None

    def _test(self, actual: Any) -> bool:
        left, right = to_number(actual), to_number(self.value)
        if left is None or right is None:
            return False
        return left < right


class InCondition(_Condition):
    operator: Literal["in"] = "in"
    value: list[Any] = Field(default_factory=list)

    def _test(self, actual: Any) -> bool:
        return actual in self.value


class NotInCondition(_Condition):
    operator: Literal["not_in"] = "not_in"
    value: list[Any] = Field(default_factory=list)

    def _test(self, actual: Any) -> bool:
        return actual not in self.value


FilterCondition = Annotated[
    EqualsCondition
    | NotEqualsCondition
    | ContainsCondition
    | NotContainsCondition
    | GreaterThanCondition
    | LessThanCondition
    | InCondition
    | NotInCondition,
    Field(discriminator="operator"),
]


class EndpointFilter(BaseModel):
    """Ordered filter conditions. Delivery requires all of them to match."""

    enabled: bool = Field(default=False, description="Whether filtering is applied")
    conditions: list[FilterCondition] = Field(
        default_factory=list,
        description="Conditions evaluated in order",
    )

    def matches(self, body: dict[str, Any]) -> bool:
        """Check an event body against the filter.

        Args:
            body: Event body.

        Returns:
            True when filtering is disabled or every condition passes.
        """
        if not self.enabled:
            return True
        return all(condition.matches(body) for condition in self.conditions)
