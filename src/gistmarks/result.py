"""Explicit success/failure values.

Repository calls, the codec wrapper and tree operations return a
``Result`` instead of raising for expected failures, so the orchestrator
can inspect and branch without try/except around every await.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an operation: ``data`` on success, ``error`` otherwise."""

    success: bool
    data: T | None = None
    error: Exception | None = None

    def unwrap(self) -> T:
        """Return ``data`` or raise the stored error."""
        if not self.success:
            assert self.error is not None
            raise self.error
        return self.data  # type: ignore[return-value]


def success(data: T) -> Result[T]:
    return Result(success=True, data=data)


def failure(error: Exception) -> Result:
    return Result(success=False, error=error)


def is_success(result: Result) -> bool:
    return result.success


def is_failure(result: Result) -> bool:
    return not result.success


def map_result(result: Result[T], mapper: Callable[[T], U]) -> Result[U]:
    """Apply *mapper* to the data of a successful result."""
    if result.success:
        return success(mapper(result.data))  # type: ignore[arg-type]
    return Result(success=False, error=result.error)


def flat_map_result(
    result: Result[T], mapper: Callable[[T], Result[U]]
) -> Result[U]:
    """Chain a result-returning function onto a successful result."""
    if result.success:
        return mapper(result.data)  # type: ignore[arg-type]
    return Result(success=False, error=result.error)
