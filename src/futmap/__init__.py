"""
This package provides a parallel map: a single function applied on every element of a collection by a pool of
worker processes, with results returned in input order. On top of a bare executor it gives you:
 - eager arguments -- extra arguments are evaluated exactly once, in the caller, before anything gets dispatched.
   Wrap an expression in `defer` to have its failure abort the call instead of crashing in your code before it,
 - closure packaging -- the function is shipped together with exactly the globals and closure cells it references,
   so lambdas and locally defined helpers work on workers, and unreferenced large objects are not copied around,
 - reproducible randomness -- with `Options(seed=...)` every element gets its own seed derived from the base seed,
   independently of chunking and of the number of workers,
 - fail-together errors -- a failing element does not stop the others, the error is raised at the end with the
   failing indices attached.

To use, configure a WorkerPool (explicitly, or process-wide via `plan`), and call `parallel_map` with your function
and collection. Without a pool, everything runs sequentially in-process -- through the same serialization, so the
behaviour does not change when you add workers.

WorkItems share no state: side effects of the function (mutating globals, appending to captured lists) are not visible
to the caller nor to other elements.
"""

from futmap.core import parallel_map, parallel_map_indexed  # noqa: F401
from futmap.errors import (  # noqa: F401
    ArgumentEvaluationError,
    ElementError,
    FutmapError,
    MapCancelled,
    MissingDependency,
    PackagingError,
    PoolUnavailable,
    UnresolvedBinding,
    WorkerExecutionError,
)
from futmap.materialize import defer  # noqa: F401
from futmap.options import Options  # noqa: F401
from futmap.pool import Config, WorkerPool, current_pool, plan  # noqa: F401
from futmap.seeding import RandomSeedWarning, element_rng  # noqa: F401
