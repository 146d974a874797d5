import threading
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from numpy.random import SeedSequence

SeedLike = Union[None, bool, int, SeedSequence, Sequence[SeedSequence]]


@dataclass
class Options:
    """Per-call behaviour of `parallel_map`. The number of workers is not here -- it belongs to the pool, see
    `futmap.pool`."""

    seed: SeedLike = None
    packages: Sequence[str] = ()  # modules imported on every worker before the unit of work runs
    stdout: bool = True  # capture stdout of the unit of work and replay it in the caller
    conditions: bool = True  # capture warnings of the unit of work and re-issue them in the caller
    progress: bool = False

    scheduling: float = 1.0  # chunks per worker, float("inf") for one element per chunk
    chunk_size: Optional[int] = None  # overrides scheduling
    stop_on_error: bool = False  # fail-fast instead of fail-together
    cancel: Optional[threading.Event] = None

    def __post_init__(self) -> None:
        if self.scheduling <= 0:
            raise ValueError(f"scheduling must be positive, got {self.scheduling}")
        if self.chunk_size is not None and self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
