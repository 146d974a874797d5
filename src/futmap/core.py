import logging
from typing import Any, Callable, Iterable, Optional, TypeVar

from futmap.dispatch import dispatch
from futmap.ds import WorkItem
from futmap.materialize import materialize
from futmap.options import Options
from futmap.packaging import pack
from futmap.pool import WorkerPool, current_pool
from futmap.seeding import element_seeds

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def _map(
    f: Callable[..., R],
    s: Iterable[T],
    args: tuple,
    kwargs: dict[str, Any],
    options: Optional[Options],
    pool: Optional[WorkerPool],
    indexed: bool,
) -> list[R]:
    options = options or Options()
    # extra arguments are evaluated exactly once, before anything else happens
    materialized_args, materialized_kwargs = materialize(args, kwargs)
    elements = list(s)
    seeds = element_seeds(options.seed, len(elements))
    package = pack(f, materialized_args, materialized_kwargs, options.packages)
    items = [WorkItem(index=i, element=e, seed=seeds[i]) for i, e in enumerate(elements)]
    return dispatch(package, items, pool or current_pool(), options, indexed=indexed)


def parallel_map(
    f: Callable[..., R],
    s: Iterable[T],
    *args: Any,
    options: Optional[Options] = None,
    pool: Optional[WorkerPool] = None,
    **kwargs: Any,
) -> list[R]:
    """`[f(e, *args, **kwargs) for e in s]`, computed on the workers of `pool` (or the planned pool), in input order."""
    return _map(f, s, args, kwargs, options, pool, indexed=False)


def parallel_map_indexed(
    f: Callable[..., R],
    s: Iterable[T],
    *args: Any,
    options: Optional[Options] = None,
    pool: Optional[WorkerPool] = None,
    **kwargs: Any,
) -> list[R]:
    """Like `parallel_map`, but calls `f(e, i, *args, **kwargs)` with `i` being the 0-based position of `e`."""
    return _map(f, s, args, kwargs, options, pool, indexed=True)
