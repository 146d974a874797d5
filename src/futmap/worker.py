"""
Worker side of the dispatch: unpacks the ClosurePackage and runs it over one chunk of WorkItems. Runs in a pool
process, or in the caller's process for sequential execution -- the code path is the same, and in both cases the
package is deserialized afresh per chunk, so WorkItems of different chunks share no state.
"""

import io
import logging
import pickle
import traceback
import warnings
from contextlib import ExitStack, redirect_stdout
from dataclasses import dataclass
from typing import Any, Callable

from futmap.ds import Failure, FailureKind, Outcome, WorkItem
from futmap.errors import MissingDependency, UnresolvedBinding
from futmap.packaging import loads, unpack
from futmap.seeding import seeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerSettings:
    indexed: bool = False
    stdout: bool = True
    conditions: bool = True


def _transportable(e: BaseException) -> BaseException:
    try:
        pickle.loads(pickle.dumps(e))
        return e
    except Exception:
        return RuntimeError(f"{type(e).__name__}: {e}")


def _failure_of(e: Exception, item: WorkItem) -> Failure:
    origin = f"failure of element {item.index}"
    if isinstance(e, MissingDependency):
        return Failure(origin, _transportable(e), FailureKind.MISSING_DEPENDENCY, module=e.module, name=e.binding)
    if isinstance(e, UnresolvedBinding):
        return Failure(origin, _transportable(e), FailureKind.UNRESOLVED_BINDING, name=e.name)
    if isinstance(e, ModuleNotFoundError):
        return Failure(origin, _transportable(e), FailureKind.MISSING_DEPENDENCY, module=e.name)
    if type(e) is NameError:
        return Failure(origin, _transportable(e), FailureKind.UNRESOLVED_BINDING, name=getattr(e, "name", None))
    return Failure(origin, _transportable(e), traceback=traceback.format_exc())


def _run_item(f: Callable, args: tuple, kwargs: dict[str, Any], item: WorkItem, settings: WorkerSettings) -> Outcome:
    outcome = Outcome(item.index)
    buffer = io.StringIO()
    with ExitStack() as stack:
        if settings.stdout:
            stack.enter_context(redirect_stdout(buffer))
        caught = None
        if settings.conditions:
            caught = stack.enter_context(warnings.catch_warnings(record=True))
            warnings.simplefilter("always")
        if item.seed is not None:
            stack.enter_context(seeded(item.seed))
        try:
            if settings.indexed:
                outcome.value = f(item.element, item.index, *args, **kwargs)
            else:
                outcome.value = f(item.element, *args, **kwargs)
        except Exception as e:
            outcome.failure = _failure_of(e, item)
    outcome.stdout = buffer.getvalue()
    if caught:
        outcome.conditions = [(w.category, str(w.message)) for w in caught]
    return outcome


def run_chunk(payload: bytes, items: list[WorkItem], settings: WorkerSettings) -> list[Outcome]:
    logger.debug(f"running a chunk of {len(items)} items starting at {items[0].index if items else None}")
    try:
        f, args, kwargs = unpack(loads(payload))
    except (MissingDependency, UnresolvedBinding) as e:
        logger.debug(f"chunk can not be unpacked: {e}")
        return [Outcome(item.index, failure=_failure_of(e, item)) for item in items]
    return [_run_item(f, args, kwargs, item, settings) for item in items]
