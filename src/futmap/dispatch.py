"""
Fans WorkItems out to the pool in static, even-sized chunks and reassembles the outcomes in input order.

Chunking amortizes the per-task overhead, at the price of balancing poorly when per-element cost is wildly uneven
(raise `scheduling` then). The flip side is the grouped-data pitfall: calling the dispatcher once per tiny group pays
the pool overhead per group, with negligible work each time -- dispatch once over all groups instead, see
`futmap.pd.groups`.

Failures are fail-together: every chunk runs to completion, failures are recorded in their ResultSlot, and only then
the lowest-index failure is raised, listing all failing indices. `stop_on_error` makes it fail-fast.
A worker dying mid-chunk fails the elements of every chunk in flight; only a pool that can not take submissions
makes the call fall back to sequential execution.
"""

import logging
import math
import sys
import warnings
from concurrent.futures import FIRST_COMPLETED, Future, wait
from concurrent.futures.process import BrokenProcessPool
from typing import Any, Optional

from tqdm import tqdm

from futmap.ds import Failure, Outcome, ResultSlot, WorkItem
from futmap.errors import MapCancelled, PoolUnavailable
from futmap.options import Options
from futmap.packaging import ClosurePackage
from futmap.pool import WorkerPool
from futmap.worker import WorkerSettings, run_chunk

logger = logging.getLogger(__name__)

_cancel_poll_s = 0.1


def make_chunks(n: int, workers: int, scheduling: float = 1.0, chunk_size: Optional[int] = None) -> list[range]:
    """make_chunks(5, 2) -> [range(0, 3), range(3, 5)]"""
    if n == 0:
        return []
    if chunk_size is not None:
        return [range(i, min(i + chunk_size, n)) for i in range(0, n, chunk_size)]
    if math.isinf(scheduling):
        n_chunks = n
    else:
        n_chunks = min(n, max(1, round(workers * scheduling)))
    size, rest = divmod(n, n_chunks)
    chunks = []
    start = 0
    for i in range(n_chunks):
        end = start + size + (1 if i < rest else 0)
        chunks.append(range(start, end))
        start = end
    return chunks


def _record(outcomes: list[Outcome], slots: list[ResultSlot], progress: Optional[tqdm]) -> bool:
    """Returns whether any of the outcomes is a failure."""
    for outcome in outcomes:
        slots[outcome.index].complete(outcome)
    if progress is not None:
        progress.update(len(outcomes))
    return any(o.failure is not None for o in outcomes)


def _check_cancel(options: Options) -> None:
    if options.cancel is not None and options.cancel.is_set():
        raise MapCancelled("call cancelled, partial results discarded")


def _run_sequential(
    payload: bytes,
    chunks: list[list[WorkItem]],
    settings: WorkerSettings,
    slots: list[ResultSlot],
    options: Options,
    progress: Optional[tqdm],
) -> None:
    for chunk in chunks:
        _check_cancel(options)
        failed = _record(run_chunk(payload, chunk, settings), slots, progress)
        if failed and options.stop_on_error:
            logger.debug("stopping on first error")
            return


def _failed(chunk: list[WorkItem], origin: str, e: Exception) -> list[Outcome]:
    return [Outcome(item.index, failure=Failure(f"{origin} {item.index}", e)) for item in chunk]


def _run_parallel(
    payload: bytes,
    chunks: list[list[WorkItem]],
    settings: WorkerSettings,
    slots: list[ResultSlot],
    options: Options,
    pool: WorkerPool,
    progress: tqdm,
) -> None:
    running: dict[Future, list[WorkItem]] = {}
    try:
        for chunk in chunks:
            running[pool.submit(run_chunk, payload, chunk, settings)] = chunk
        logger.debug(f"submitted {len(running)} chunks to {pool.workers} workers")
    except PoolUnavailable as e:
        # nothing has been waited for yet, the whole call reruns in-process
        pool.discard()
        if not pool.config.fallback:
            raise
        logger.warning(f"worker pool unavailable ({e}), falling back to sequential execution")
        progress.close()
        _run_sequential(payload, chunks, settings, slots, options, None)
        return

    crashed = False
    while running:
        if options.cancel is not None and options.cancel.is_set():
            pool.discard()
            _check_cancel(options)
        timeout = _cancel_poll_s if options.cancel is not None else None
        done, _ = wait(running.keys(), timeout=timeout, return_when=FIRST_COMPLETED)
        for future in done:
            chunk = running.pop(future)
            try:
                outcomes = future.result()
            except BrokenProcessPool as e:
                # a worker died mid-chunk; every chunk in flight is lost with it and fails, no rerun in the caller
                crashed = True
                logger.warning(f"worker terminated abruptly, failing the chunk starting at {chunk[0].index}")
                outcomes = _failed(chunk, "worker terminated abruptly while running element", e)
            except Exception as e:
                # the chunk ran, but its outcomes could not be transported back
                logger.debug(f"chunk starting at {chunk[0].index} failed in transport: {e}")
                outcomes = _failed(chunk, "transport of element", e)
            failed = _record(outcomes, slots, progress)
            if failed and options.stop_on_error:
                logger.debug("stopping on first error, abandoning the remaining chunks")
                for f in running:
                    f.cancel()
                running.clear()
                break

    if crashed:
        pool.discard()


def _relay(slots: list[ResultSlot]) -> None:
    for slot in slots:
        if slot.stdout:
            sys.stdout.write(slot.stdout)
        for category, message in slot.conditions:
            warnings.warn(message, category, stacklevel=5)


def _raise_failures(slots: list[ResultSlot]) -> None:
    errors = [e for e in (slot.error() for slot in slots) if e is not None]
    if not errors:
        return
    first = errors[0]
    first.errors = errors
    logger.debug(f"{len(errors)} of {len(slots)} elements failed")
    raise first from getattr(first, "original", None)


def dispatch(
    package: ClosurePackage,
    items: list[WorkItem],
    pool: WorkerPool,
    options: Options,
    indexed: bool = False,
) -> list[Any]:
    slots = [ResultSlot.pending(item.index) for item in items]
    if not items:
        return []
    payload = package.dumps()
    settings = WorkerSettings(indexed=indexed, stdout=options.stdout, conditions=options.conditions)
    ranges = make_chunks(len(items), pool.workers, options.scheduling, options.chunk_size)
    chunks = [[items[i] for i in r] for r in ranges]
    logger.debug(f"dispatching {len(items)} items in {len(chunks)} chunks")

    progress = tqdm(total=len(items), disable=not options.progress, unit="item")
    try:
        if pool.sequential:
            _run_sequential(payload, chunks, settings, slots, options, progress)
        else:
            _run_parallel(payload, chunks, settings, slots, options, pool, progress)
    finally:
        progress.close()

    _relay(slots)
    _raise_failures(slots)
    return [slot.value for slot in slots]
