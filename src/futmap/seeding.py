"""
Per-element random seeds. One base seed becomes one numpy SeedSequence per element, derived by spawn key
(`spawn_key + (index,)`) -- the stream-splitting construction numpy itself uses for `SeedSequence.spawn`. The derived
seed of element `i` depends only on the base seed and on `i`, never on chunking or the number of workers.

On the worker, `seeded` makes the seed effective for the stdlib `random` module, numpy's legacy global generator and
a fresh `numpy.random.Generator` exposed via `element_rng`.
"""

import logging
import random
import warnings
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

import numpy as np
from numpy.random import SeedSequence

from futmap.options import SeedLike

logger = logging.getLogger(__name__)

_element_rng: ContextVar[Optional[np.random.Generator]] = ContextVar("futmap_element_rng", default=None)


class RandomSeedWarning(UserWarning):
    pass


def base_seed(seed: SeedLike) -> Optional[SeedSequence]:
    if seed is None or seed is False:
        return None
    if seed is True:
        drawn = SeedSequence()
        logger.info(f"drew base seed entropy {drawn.entropy}")
        warnings.warn(
            "seed=True draws a random base seed; pass an explicit integer seed for reproducible results",
            RandomSeedWarning,
            stacklevel=5,
        )
        return drawn
    if isinstance(seed, SeedSequence):
        return seed
    if isinstance(seed, (int, np.integer)):
        if seed < 0:
            raise ValueError(f"seed must be non-negative, got {seed}")
        return SeedSequence(int(seed))
    raise TypeError(f"unsupported seed {seed!r}")


def derive(base: SeedSequence, index: int) -> SeedSequence:
    # equals the index-th child of a freshly constructed `base.spawn(...)`, without mutating `base`
    return SeedSequence(base.entropy, spawn_key=tuple(base.spawn_key) + (index,), pool_size=base.pool_size)


def element_seeds(seed: SeedLike, n: int) -> list[Optional[SeedSequence]]:
    if isinstance(seed, (list, tuple)):
        if len(seed) != n:
            raise ValueError(f"got {len(seed)} seeds for {n} elements")
        if not all(isinstance(s, SeedSequence) for s in seed):
            raise TypeError("a sequence of seeds must contain numpy SeedSequence instances only")
        return list(seed)
    base = base_seed(seed)
    if base is None:
        return [None] * n
    return [derive(base, i) for i in range(n)]


@contextmanager
def seeded(seed: SeedSequence) -> Iterator[np.random.Generator]:
    py_state = random.getstate()
    np_state = np.random.get_state()
    random.seed(int.from_bytes(seed.generate_state(4, dtype=np.uint64).tobytes(), "little"))
    np.random.seed(seed.generate_state(8))
    rng = np.random.default_rng(seed)
    token = _element_rng.set(rng)
    try:
        yield rng
    finally:
        _element_rng.reset(token)
        random.setstate(py_state)
        np.random.set_state(np_state)


def element_rng() -> np.random.Generator:
    """The generator seeded for the element currently being processed. Outside of a seeded call, an unseeded one."""
    rng = _element_rng.get()
    if rng is None:
        return np.random.default_rng()
    return rng
