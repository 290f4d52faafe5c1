"""Condition evaluation for condition steps and conditional routing."""

from __future__ import annotations

import logging
import operator
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .contracts import ConditionExpression

logger = logging.getLogger(__name__)

_MISSING = object()


def _contains(left: Any, right: Any) -> bool:
    if left is None:
        return False
    return right in left


# Keys are normalised: lower-case with underscores removed, so both
# ``notEquals`` and ``not_equals`` resolve.
OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": operator.eq,
    "notequals": operator.ne,
    "greaterthan": operator.gt,
    "lessthan": operator.lt,
    "contains": _contains,
}


def resolve_field(data: Mapping[str, Any], path: str) -> Any:
    """Look up ``path`` in ``data``, following dots into nested mappings."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return None
    return current


def evaluate_condition(
    condition: Optional[Union[ConditionExpression, Mapping[str, Any]]],
    data: Mapping[str, Any],
) -> bool:
    """Evaluate ``condition`` against ``data``.

    A missing condition or an unknown operator evaluates to ``True``.
    Comparisons between incompatible values evaluate to ``False``.
    """
    if not condition:
        return True
    if not isinstance(condition, ConditionExpression):
        condition = ConditionExpression.model_validate(condition)

    func = OPERATORS.get(condition.operator.replace("_", "").lower())
    if func is None:
        logger.debug(f"Unknown condition operator {condition.operator!r}; treating as true")
        return True

    field_value = resolve_field(data, condition.field)
    try:
        return bool(func(field_value, condition.value))
    except TypeError:
        logger.warning(
            f"Cannot compare {condition.field}={field_value!r} using "
            f"{condition.operator} {condition.value!r}"
        )
        return False
