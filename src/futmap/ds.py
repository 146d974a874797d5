"""
Module contents:
 - WorkItem: one element of the input collection, together with its position and derived seed.
 - Failure: a caught exception, classified. Filled on the worker, turned into an `errors.ElementError` in the caller.
 - Outcome: what a worker reports back for a single WorkItem.
 - ResultSlot: write-once holder of an Outcome, one per WorkItem, used to reassemble results in input order.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from numpy.random import SeedSequence
from typing_extensions import Self

from futmap.errors import ElementError, MissingDependency, UnresolvedBinding, WorkerExecutionError


@dataclass(frozen=True)
class WorkItem:
    index: int
    element: Any
    seed: Optional[SeedSequence] = None


class FailureKind(str, Enum):
    EXECUTION = "execution"
    MISSING_DEPENDENCY = "missing_dependency"
    UNRESOLVED_BINDING = "unresolved_binding"


@dataclass
class Failure:
    """Represents a caught Exception. `origin` is a human readable description of where it happened, `module` and
    `name` are filled for the dependency-related kinds."""

    origin: str
    exception: BaseException
    kind: FailureKind = FailureKind.EXECUTION
    module: Optional[str] = None
    name: Optional[str] = None
    traceback: str = ""

    def __eq__(self, other: Any) -> bool:
        # NOTE we override since `Exception`'s eq seems to be non cooperative with pickling
        if not isinstance(other, Failure):
            return False
        return (
            other.origin == self.origin
            and other.kind == self.kind
            and type(other.exception) is type(self.exception)
            and str(self.exception) == str(other.exception)
        )

    def to_error(self, index: int) -> ElementError:
        if self.kind is FailureKind.MISSING_DEPENDENCY:
            return MissingDependency(self.module or "<unknown>", self.name, index)
        if self.kind is FailureKind.UNRESOLVED_BINDING:
            return UnresolvedBinding(self.name or "<unknown>", index)
        return WorkerExecutionError(index, self.exception, self.traceback)


@dataclass
class Outcome:
    index: int
    value: Any = None
    failure: Optional[Failure] = None
    stdout: str = ""
    conditions: list[tuple[type, str]] = field(default_factory=list)


class Status(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ResultSlot:
    index: int
    status: Status = Status.PENDING
    value: Any = None
    failure: Optional[Failure] = None
    stdout: str = ""
    conditions: list[tuple[type, str]] = field(default_factory=list)

    @classmethod
    def pending(cls, index: int) -> Self:
        return cls(index=index)

    def complete(self, outcome: Outcome) -> None:
        if self.status is not Status.PENDING:
            raise ValueError(f"internal error: slot {self.index} completed twice")
        if outcome.index != self.index:
            raise ValueError(f"internal error: outcome {outcome.index} routed to slot {self.index}")
        if outcome.failure is None:
            self.status = Status.SUCCESS
            self.value = outcome.value
        else:
            self.status = Status.ERROR
            self.failure = outcome.failure
        self.stdout = outcome.stdout
        self.conditions = outcome.conditions

    def error(self) -> Optional[ElementError]:
        if self.failure is None:
            return None
        return self.failure.to_error(self.index)
