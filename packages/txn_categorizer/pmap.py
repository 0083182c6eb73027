"""Bounded-concurrency map over a ``ThreadPoolExecutor``, modelled on ``p-map``.

Batch categorization uses this to push independent transactions through the
pipeline with a small worker cap. Output order always matches input order.

- ``concurrency``: maximum number of mapper calls in flight.
- ``stop_on_error`` (default True): the first mapper error propagates and
  queued work is cancelled; when False every item runs and failures are raised
  together as an ``ExceptionGroup``.
- ``p_map_settled``: never raises for mapper errors; returns one ``Settled``
  per input so callers can isolate per-item failures.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Generic, TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


@dataclass(frozen=True, slots=True)
class Settled(Generic[InT, OutT]):
    """Outcome of one mapper call in :func:`p_map_settled`."""

    item: InT
    value: OutT | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _run_window(
    iterable: Iterable[InT],
    mapper: Callable[[InT], object],
    *,
    concurrency: int,
    on_error: Callable[[int, Exception, ThreadPoolExecutor], None],
) -> tuple[dict[int, object], int]:
    """Drive ``mapper`` over ``iterable`` keeping at most ``concurrency`` calls active.

    Returns ``(results_by_index, submitted_count)``. Mapper exceptions are
    handed to ``on_error``; it may re-raise to abort the whole run.
    """

    if not isinstance(concurrency, int) or isinstance(concurrency, bool) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    it = enumerate(iterable)
    results: dict[int, object] = {}
    future_to_idx: dict[Future, int] = {}
    submitted = 0

    def _submit(pool: ThreadPoolExecutor) -> Future | None:
        nonlocal submitted
        try:
            idx, item = next(it)
        except StopIteration:
            return None
        fut = pool.submit(mapper, item)
        future_to_idx[fut] = idx
        submitted += 1
        return fut

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        active: set[Future] = set()
        for _ in range(concurrency):
            fut = _submit(pool)
            if fut is None:
                break
            active.add(fut)

        while active:
            done, active = wait(active, return_when=FIRST_COMPLETED)
            for fut in done:
                idx = future_to_idx.pop(fut)
                try:
                    results[idx] = fut.result()
                except Exception as e:  # noqa: BLE001
                    on_error(idx, e, pool)
            for _ in range(len(done)):
                fut = _submit(pool)
                if fut is None:
                    break
                active.add(fut)

    return results, submitted


def p_map(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT],
    *,
    concurrency: int,
    stop_on_error: bool = True,
) -> list[OutT]:
    """Map ``iterable`` through ``mapper`` with a bounded concurrency limit."""

    errors: list[Exception] = []

    def _on_error(_idx: int, exc: Exception, pool: ThreadPoolExecutor) -> None:
        if stop_on_error:
            try:
                pool.shutdown(wait=False, cancel_futures=True)
            finally:
                raise exc
        errors.append(exc)

    results, submitted = _run_window(
        iterable, mapper, concurrency=concurrency, on_error=_on_error
    )

    if errors:
        raise ExceptionGroup("p_map: one or more mapper calls failed", errors)

    return [results[i] for i in range(submitted)]  # type: ignore[misc]


def p_map_settled(
    items: Iterable[InT],
    mapper: Callable[[InT], OutT],
    *,
    concurrency: int,
) -> list[Settled[InT, OutT]]:
    """Like :func:`p_map` but every input yields a ``Settled`` (value or error)."""

    materialized = list(items)
    errors: dict[int, Exception] = {}

    def _on_error(idx: int, exc: Exception, _pool: ThreadPoolExecutor) -> None:
        errors[idx] = exc

    results, _submitted = _run_window(
        materialized, mapper, concurrency=concurrency, on_error=_on_error
    )

    out: list[Settled[InT, OutT]] = []
    for i, item in enumerate(materialized):
        if i in errors:
            out.append(Settled(item=item, error=errors[i]))
        else:
            out.append(Settled(item=item, value=results.get(i)))  # type: ignore[arg-type]
    return out


__all__ = ["Settled", "p_map", "p_map_settled"]
