"""
The worker pool: a ProcessPoolExecutor behind a resource object with an explicit lifecycle.

Features:
 - you control the size of the pool (and thus the parallelism); `workers=1` means sequential in-process execution,
   no processes get started at all,
 - you control the multiprocessing context. Default is forkserver: each worker is its own address space and receives
   copies of whatever it needs. Avoid "fork" if the caller holds fork-unsafe resources (open graphics devices, threads
   holding locks, ...) -- and never touch such a resource from a unit of work when using "fork",
 - you control max_tasks_per_child (how many chunks a process solves until recycled), python 3.11+ only,
 - if the pool can not be started or takes no submissions, calls fall back to sequential in-process execution,
   unless `fallback=False`, in which case PoolUnavailable is raised. A worker dying while running a chunk (os._exit,
   segfault, OOM kill) is not a pool problem: the elements of the chunks in flight fail, the executor gets replaced.

The pool is started lazily on first use and reused across calls until `shutdown`. Use it as a context manager, or
register it process-wide with `plan` so that calls without an explicit `pool=` pick it up.
"""

import logging
import multiprocessing as mp
from concurrent.futures import Future
from concurrent.futures import ProcessPoolExecutor as PPE
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Any, Callable, Optional

from typing_extensions import Self

from futmap.errors import PoolUnavailable

logger = logging.getLogger(__name__)


@dataclass
class Config:
    workers: int = 1
    mp_context: str = "forkserver"
    max_tasks_per_child: Optional[int] = None  # None for unlimited
    fallback: bool = True


class WorkerPool:
    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        if self.config.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.config.workers}")
        self._executor: Optional[PPE] = None

    @property
    def workers(self) -> int:
        return self.config.workers

    @property
    def sequential(self) -> bool:
        return self.config.workers == 1

    def start(self) -> Self:
        if self.sequential or self._executor is not None:
            return self
        kwargs: dict[str, Any] = {}
        if self.config.max_tasks_per_child:
            kwargs["max_tasks_per_child"] = self.config.max_tasks_per_child
        try:
            ctx = mp.get_context(self.config.mp_context)
            self._executor = PPE(max_workers=self.config.workers, mp_context=ctx, **kwargs)
        except (ValueError, TypeError, OSError) as e:
            raise PoolUnavailable(f"failed to start a pool of {self.config.workers} workers: {e}") from e
        logger.debug(f"started a pool of {self.config.workers} workers with context {self.config.mp_context}")
        return self

    def submit(self, fn: Callable, *args: Any) -> Future:
        self.start()
        if self._executor is None:
            raise ValueError("internal error: executor missing after start")
        try:
            return self._executor.submit(fn, *args)
        except (BrokenProcessPool, RuntimeError, OSError) as e:
            self.discard()
            raise PoolUnavailable(f"failed to submit to the pool: {e}") from e

    def discard(self) -> None:
        """Drops the executor without waiting, e.g. after it broke down or the call got cancelled. Running tasks are
        abandoned. The next submit starts a fresh one."""
        if self._executor is not None:
            logger.debug("discarding the executor")
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            logger.debug(f"shutting down the pool of {self.config.workers} workers")
            self._executor.shutdown(wait=wait)
            self._executor = None

    def __enter__(self) -> Self:
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()


_planned: Optional[WorkerPool] = None


def plan(config: Optional[Config] = None, **kwargs: Any) -> WorkerPool:
    """Registers the process-wide pool, shutting down the previously registered one. `plan()` resets to sequential."""
    global _planned
    if config is not None and kwargs:
        raise ValueError("pass either a Config or its fields, not both")
    if _planned is not None:
        _planned.shutdown()
    _planned = WorkerPool(config or Config(**kwargs))
    return _planned


def current_pool() -> WorkerPool:
    global _planned
    if _planned is None:
        _planned = WorkerPool()
    return _planned
