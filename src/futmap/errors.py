"""
Exceptions raised by futmap. Two families:
 - call-level errors (ArgumentEvaluationError, PackagingError, PoolUnavailable, MapCancelled) are raised immediately,
   nothing or nothing more gets dispatched,
 - element-level errors (ElementError subclasses) are collected per WorkItem and raised once all work has finished.
   The raised one is the failure with the lowest index, the rest is available in `errors`.
"""

from typing import Optional


class FutmapError(Exception):
    pass


class ArgumentEvaluationError(FutmapError):
    def __init__(self, argument: str, original: BaseException):
        super().__init__(f"evaluation of argument {argument} failed: {type(original).__name__}: {original}")
        self.argument = argument
        self.original = original


class PackagingError(FutmapError):
    """The unit of work or its arguments could not be serialized for transport to a worker."""


class PoolUnavailable(FutmapError):
    """The worker pool could not be started or broke down mid-call."""


class MapCancelled(FutmapError):
    """Raised when `Options.cancel` got set. Partial results are discarded."""


class ElementError(FutmapError):
    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.index = index
        self.errors: list["ElementError"] = [self]

    @property
    def failed_indices(self) -> list[int]:
        return [e.index for e in self.errors if e.index is not None]

    def __str__(self) -> str:
        if len(self.errors) > 1:
            return f"{self.message} (failed indices: {self.failed_indices})"
        return self.message


class WorkerExecutionError(ElementError):
    def __init__(self, index: int, original: BaseException, remote_traceback: str = ""):
        super().__init__(f"unit of work failed on element {index}: {type(original).__name__}: {original}", index)
        self.original = original
        self.remote_traceback = remote_traceback


class MissingDependency(ElementError):
    def __init__(self, module: str, binding: Optional[str] = None, index: Optional[int] = None):
        needed_by = f" (needed by {binding!r})" if binding else ""
        where = f" for element {index}" if index is not None else ""
        super().__init__(f"module {module!r}{needed_by} could not be loaded on the worker{where}", index)
        self.module = module
        self.binding = binding


class UnresolvedBinding(ElementError):
    def __init__(self, name: str, index: Optional[int] = None):
        where = f" for element {index}" if index is not None else ""
        super().__init__(f"name {name!r} could not be resolved on the worker{where}", index)
        self.name = name
