"""
Mapping over groups of a pandas DataFrame. The common mistake is to run a parallel map inside a per-group apply, which
starts a whole dispatch for every (often tiny) group. `map_groups` does the opposite: one dispatch, groups as elements.
"""

from typing import Any, Callable, Hashable, Optional, Sequence, Union

import pandas as pd

from futmap.core import parallel_map
from futmap.options import Options
from futmap.pool import WorkerPool


def map_groups(
    frame: pd.DataFrame,
    by: Union[Hashable, Sequence[Hashable]],
    f: Callable[..., Any],
    *args: Any,
    options: Optional[Options] = None,
    pool: Optional[WorkerPool] = None,
    **kwargs: Any,
) -> pd.Series:
    """Returns a Series of `f(group_frame, *args, **kwargs)` indexed by group key, keys sorted as by groupby."""
    grouped = frame.groupby(by, sort=True)
    keys = []
    groups = []
    for key, group in grouped:
        keys.append(key)
        groups.append(group)
    results = parallel_map(f, groups, *args, options=options, pool=pool, **kwargs)
    if isinstance(by, list):
        index = pd.MultiIndex.from_tuples(keys, names=by)
    else:
        index = pd.Index(keys, name=by)
    return pd.Series(results, index=index, dtype=object if not results else None)
