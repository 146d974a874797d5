import functools
import logging
import os
import random
import threading
import time
import warnings
from concurrent.futures.process import BrokenProcessPool

import pytest

from futmap import (
    ArgumentEvaluationError,
    Config,
    MapCancelled,
    MissingDependency,
    Options,
    PoolUnavailable,
    RandomSeedWarning,
    UnresolvedBinding,
    WorkerExecutionError,
    WorkerPool,
    current_pool,
    defer,
    element_rng,
    parallel_map,
    parallel_map_indexed,
    plan,
)


def _slow_identity(x: int) -> int:
    time.sleep(0.05 * (5 - x))
    return x


def _draw(x: int) -> float:
    return random.random()


def _noisy(x: int) -> int:
    print(x)
    if x in (1, 3):
        raise ValueError(f"thou shalt not pass {x}")
    return x


def _crash(x: int) -> int:
    if x == 2:
        os._exit(7)
    return x


def _unbound(x: int) -> int:
    if x > 100:
        y = 1
    return y


@pytest.fixture(scope="module")
def pool():
    logging.basicConfig(level="DEBUG", force=True)
    with WorkerPool(Config(workers=4)) as p:
        yield p


def test_identity_two_workers() -> None:
    with WorkerPool(Config(workers=2)) as pool:
        assert parallel_map(lambda x: x, [1, 2, 3, 4, 5], pool=pool) == [1, 2, 3, 4, 5]


def test_order_preserved(pool: WorkerPool) -> None:
    # later elements finish first
    result = parallel_map(_slow_identity, range(5), options=Options(chunk_size=1), pool=pool)
    assert result == [0, 1, 2, 3, 4]


def test_seeding_independent_of_workers(pool: WorkerPool) -> None:
    sequential = parallel_map(_draw, range(8), options=Options(seed=123))
    parallel = parallel_map(_draw, range(8), options=Options(seed=123, chunk_size=3), pool=pool)
    assert sequential == parallel
    assert sequential != parallel_map(_draw, range(8), options=Options(seed=456), pool=pool)


def test_seed_reproducible() -> None:
    first = parallel_map(lambda x: random.random(), [1, 2], options=Options(seed=123))
    second = parallel_map(lambda x: random.random(), [1, 2], options=Options(seed=123))
    other = parallel_map(lambda x: random.random(), [1, 2], options=Options(seed=456))
    assert first == second
    assert first != other
    assert first[0] != first[1]


def test_element_rng() -> None:
    def draw(x):
        return int(element_rng().integers(0, 1_000_000))

    options = Options(seed=1)
    assert parallel_map(draw, range(3), options=options) == parallel_map(draw, range(3), options=options)


def test_arguments_evaluated_once() -> None:
    calls = []

    def probe():
        calls.append(1)
        return 10

    assert parallel_map(lambda x, y: x + y, range(5), defer(probe)) == [10, 11, 12, 13, 14]
    assert calls == [1]


def test_argument_failure_aborts_before_dispatch(capsys) -> None:
    def failing():
        raise KeyError("nope")

    with pytest.raises(ArgumentEvaluationError) as excinfo:
        parallel_map(lambda x, y: print(x), [1, 2], defer(failing, label="y"))
    assert excinfo.value.argument == "y"
    assert isinstance(excinfo.value.original, KeyError)
    assert capsys.readouterr().out == ""


def test_fail_together(capsys) -> None:
    with pytest.raises(WorkerExecutionError) as excinfo:
        parallel_map(_noisy, range(5))
    assert excinfo.value.index == 1
    assert excinfo.value.failed_indices == [1, 3]
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert "failed indices" in str(excinfo.value)
    # every element ran, despite the failures
    assert capsys.readouterr().out == "0\n1\n2\n3\n4\n"


def test_fail_together_parallel(pool: WorkerPool, capsys) -> None:
    with pytest.raises(WorkerExecutionError) as excinfo:
        parallel_map(_noisy, range(5), pool=pool)
    assert excinfo.value.failed_indices == [1, 3]
    assert "thou shalt not pass 1" in str(excinfo.value)
    assert capsys.readouterr().out == "0\n1\n2\n3\n4\n"


def test_stop_on_error(capsys) -> None:
    with pytest.raises(WorkerExecutionError) as excinfo:
        parallel_map(_noisy, range(5), options=Options(stop_on_error=True, chunk_size=1))
    assert excinfo.value.failed_indices == [1]
    assert capsys.readouterr().out == "0\n1\n"


def test_unresolved_binding(pool: WorkerPool) -> None:
    for p in [None, pool]:
        with pytest.raises(UnresolvedBinding) as excinfo:
            parallel_map(lambda x: x + not_defined_anywhere, [1, 2], pool=p)  # noqa: F821
        assert excinfo.value.name == "not_defined_anywhere"
        assert excinfo.value.failed_indices == [0, 1]


def test_missing_dependency() -> None:
    with pytest.raises(MissingDependency) as excinfo:
        parallel_map(lambda x: x, [1, 2, 3], options=Options(packages=("futmap_no_such_module",)))
    assert excinfo.value.module == "futmap_no_such_module"
    assert excinfo.value.index == 0
    assert excinfo.value.failed_indices == [0, 1, 2]


def test_indexed_and_extra_arguments() -> None:
    assert parallel_map_indexed(lambda e, i: (i, e), "abc") == [(0, "a"), (1, "b"), (2, "c")]
    assert parallel_map(lambda x, y, z=0: x + y + z, [1, 2], 10, z=100) == [111, 112]
    assert parallel_map(lambda x, g: g(x), [1, 2], lambda v: v * 10) == [10, 20]
    assert parallel_map(lambda x: x, []) == []


def test_no_shared_state() -> None:
    acc: list[int] = []
    parallel_map(lambda x: acc.append(x), [1, 2, 3])
    assert acc == []


def test_warnings_relayed() -> None:
    with pytest.warns(UserWarning, match="careful") as record:
        parallel_map(lambda x: warnings.warn("careful"), [1])
    # reported at the call site
    assert record[0].filename == __file__

    with pytest.warns(RandomSeedWarning) as record:
        parallel_map(lambda x: x, [1], options=Options(seed=True))
    assert record[0].filename == __file__


def test_cancel() -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(MapCancelled):
        parallel_map(lambda x: x, [1, 2], options=Options(cancel=cancel))


def test_progress() -> None:
    assert parallel_map(lambda x: x + 1, range(10), options=Options(progress=True, chunk_size=2)) == list(range(1, 11))


def test_plan() -> None:
    planned = plan(workers=2)
    try:
        assert current_pool() is planned
        assert parallel_map(lambda x: x * 2, [1, 2, 3]) == [2, 4, 6]
    finally:
        plan()
    assert current_pool().sequential


def test_pool_fallback() -> None:
    broken = WorkerPool(Config(workers=2, mp_context="no-such-context"))
    assert parallel_map(lambda x: x * 2, [1, 2, 3], pool=broken) == [2, 4, 6]

    fatal = WorkerPool(Config(workers=2, mp_context="no-such-context", fallback=False))
    with pytest.raises(PoolUnavailable):
        parallel_map(lambda x: x * 2, [1, 2, 3], pool=fatal)


def test_worker_crash_fails_its_chunk() -> None:
    with WorkerPool(Config(workers=2)) as pool:
        with pytest.raises(WorkerExecutionError) as excinfo:
            parallel_map(_crash, [1, 2, 3, 4], options=Options(chunk_size=1), pool=pool)
        assert 1 in excinfo.value.failed_indices
        assert "terminated abruptly" in str(excinfo.value)
        assert isinstance(excinfo.value.__cause__, BrokenProcessPool)
        # the caller survived, and the broken executor got replaced
        assert parallel_map(lambda x: x * 3, [1, 2, 3], pool=pool) == [3, 6, 9]


def test_user_bug_is_not_unresolved_binding() -> None:
    with pytest.raises(WorkerExecutionError) as excinfo:
        parallel_map(_unbound, [1])
    assert isinstance(excinfo.value.original, UnboundLocalError)
    assert "UnboundLocalError" in excinfo.value.remote_traceback


def test_partial_of_local_function(pool: WorkerPool) -> None:
    def scale(x, k):
        return x * k

    for p in [None, pool]:
        assert parallel_map(functools.partial(lambda x, k: x * k, k=3), [1, 2], pool=p) == [3, 6]
        assert parallel_map(lambda x, g: g(x), [1, 2], functools.partial(scale, k=10), pool=p) == [10, 20]
