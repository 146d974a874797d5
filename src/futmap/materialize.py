"""
Extra arguments of a mapping call are evaluated exactly once, in the caller, before any WorkItem is built. Regular
python arguments already are; `defer` allows passing an expression whose evaluation should happen as part of the call,
so that a failure aborts the call before anything gets dispatched.

Note this is stricter than a lazy sequential map: there is no way to evaluate an argument "later, on the worker",
because the caller's scope does not exist there.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

from futmap.errors import ArgumentEvaluationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Deferred:
    expression: Callable[[], Any]
    label: Optional[str] = None


def defer(expression: Callable[[], Any], label: Optional[str] = None) -> Deferred:
    return Deferred(expression, label)


def _evaluate(value: Any, argument: str) -> Any:
    if not isinstance(value, Deferred):
        return value
    try:
        return value.expression()
    except Exception as e:
        raise ArgumentEvaluationError(value.label or argument, e) from e


def materialize(args: Sequence[Any], kwargs: Mapping[str, Any]) -> tuple[tuple, dict[str, Any]]:
    materialized_args = tuple(_evaluate(v, f"#{i}") for i, v in enumerate(args))
    materialized_kwargs = {k: _evaluate(v, repr(k)) for k, v in kwargs.items()}
    logger.debug(f"materialized {len(materialized_args)} positional and {len(materialized_kwargs)} keyword arguments")
    return materialized_args, materialized_kwargs
