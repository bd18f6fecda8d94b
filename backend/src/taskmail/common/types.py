"""
Result type used by the search entry points.

`Result[T, E]` is a discriminated union of `Ok` and `Err` so static type
checkers can narrow on the `.ok` tag:

    r: Result[SearchResults, RetrievalError] = await engine.search(...)
    if r.ok:
        r.value.results
    else:
        r.error.to_dict()

A search that cannot reach its store is an `Err`, which lets callers tell
"nothing matched" apart from "search is down".
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, Literal, TypeAlias, TypeGuard, TypeVar, cast

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")


class ResultUnwrapError(RuntimeError):
    """Raised when unwrap/expect operations are used on the wrong variant."""


class _ResultOps(Generic[T, E]):
    """Operations shared by Ok and Err."""

    ok: bool

    def is_ok(self) -> bool:
        return self.ok

    def is_err(self) -> bool:
        return not self.ok

    def unwrap(self) -> T:
        """
        Return the success value or raise ResultUnwrapError if this is Err.
        """
        if self.ok:
            return cast(Ok[T, E], self).value
        err = cast(Err[T, E], self).error
        raise ResultUnwrapError(f"Called unwrap() on Err: {err!r}")

    def unwrap_err(self) -> E:
        """
        Return the error value or raise ResultUnwrapError if this is Ok.
        """
        if not self.ok:
            return cast(Err[T, E], self).error
        val = cast(Ok[T, E], self).value
        raise ResultUnwrapError(f"Called unwrap_err() on Ok: {val!r}")

    def unwrap_or(self, default: T) -> T:
        if self.ok:
            return cast(Ok[T, E], self).value
        return default

    def map(self, fn: Callable[[T], U]) -> "Result[U, E]":
        """
        Transform the Ok value, preserving Err.
        """
        if self.ok:
            return Ok(fn(cast(Ok[T, E], self).value))
        return cast(Err[U, E], self)


@dataclass(frozen=True, slots=True)
class Ok(_ResultOps[T, E]):
    """Success variant of Result[T, E]."""

    value: T
    ok: Literal[True] = True


@dataclass(frozen=True, slots=True)
class Err(_ResultOps[T, E]):
    """Failure variant of Result[T, E]."""

    error: E
    ok: Literal[False] = False


Result: TypeAlias = Ok[T, E] | Err[T, E]


def is_ok(r: Result[T, E]) -> TypeGuard[Ok[T, E]]:
    return r.ok is True


def is_err(r: Result[T, E]) -> TypeGuard[Err[T, E]]:
    return r.ok is False


__all__ = [
    "Result",
    "Ok",
    "Err",
    "ResultUnwrapError",
    "is_ok",
    "is_err",
]
