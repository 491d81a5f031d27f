from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


# -----------------------------------------------------------------------------
# STAGE RESULTS
# Each pipeline stage returns Ok(value) or Failed(reason) instead of raising,
# so the orchestrator decides what gets persisted.
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failed:
    reason: str
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return False


StageResult = Union[Ok[T], Failed]
