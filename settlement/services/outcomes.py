from __future__ import annotations

"""
Tagged per-item results for batch jobs.

Batch loops map every item through ``isolate`` and collect the results; an
exception from one item becomes a ``Failure`` value instead of escaping the
loop.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

T = TypeVar("T")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success(Generic[T]):
    item_id: Any
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    item_id: Any
    error: str

    @property
    def ok(self) -> bool:
        return False


Result = Union[Success[T], Failure]


def _error_message(exc: BaseException) -> str:
    msg = getattr(exc, "user_message", None) or str(exc)
    return msg or exc.__class__.__name__


def isolate(item_id: Any, fn: Callable[[], T], *, on_error: Callable[[], None] | None = None) -> Result[T]:
    """Run ``fn`` for one batch item; any exception becomes a Failure."""
    try:
        return Success(item_id, fn())
    except Exception as exc:
        log.error("batch item %s failed: %s", item_id, _error_message(exc), exc_info=True)
        if on_error is not None:
            on_error()
        return Failure(item_id, _error_message(exc))
