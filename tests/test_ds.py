import pytest

from futmap.ds import Failure, FailureKind, Outcome, ResultSlot, Status
from futmap.errors import MissingDependency, UnresolvedBinding, WorkerExecutionError


def test_result_slot_write_once() -> None:
    slots = [ResultSlot.pending(i) for i in range(3)]
    for i in [2, 0, 1]:
        slots[i].complete(Outcome(i, value=i * 10))
    assert [s.value for s in slots] == [0, 10, 20]
    assert all(s.status is Status.SUCCESS for s in slots)
    with pytest.raises(ValueError):
        slots[0].complete(Outcome(0, value=1))
    with pytest.raises(ValueError):
        ResultSlot.pending(0).complete(Outcome(1))


def test_failure_to_error() -> None:
    failure = Failure(origin="a", exception=ValueError("x"))
    slot = ResultSlot.pending(4)
    slot.complete(Outcome(4, failure=failure))
    assert slot.status is Status.ERROR
    error = slot.error()
    assert isinstance(error, WorkerExecutionError)
    assert error.index == 4
    assert isinstance(error.original, ValueError)

    missing = Failure("b", ImportError(), FailureKind.MISSING_DEPENDENCY, module="m", name="n").to_error(1)
    assert isinstance(missing, MissingDependency)
    assert (missing.module, missing.binding, missing.index) == ("m", "n", 1)
    unresolved = Failure("c", NameError(), FailureKind.UNRESOLVED_BINDING, name="n").to_error(2)
    assert isinstance(unresolved, UnresolvedBinding)
    assert unresolved.name == "n"


def test_failure_eq() -> None:
    assert Failure("a", ValueError("x")) == Failure("a", ValueError("x"))
    assert Failure("a", ValueError("x")) != Failure("a", TypeError("x"))
    assert Failure("a", ValueError("x")) != Failure("a", ValueError("x"), FailureKind.UNRESOLVED_BINDING)
