from __future__ import annotations

import threading
import time

import pytest

from txn_categorizer.pmap import p_map, p_map_settled


def test_results_keep_input_order():
    def slow_first(n: int) -> int:
        time.sleep(0.02 if n == 0 else 0)
        return n * 10

    assert p_map(range(5), slow_first, concurrency=3) == [0, 10, 20, 30, 40]


def test_concurrency_limit_is_respected():
    lock = threading.Lock()
    active = 0
    peak = 0

    def work(n: int) -> int:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.01)
        with lock:
            active -= 1
        return n

    p_map(range(12), work, concurrency=2)
    assert peak <= 2


def test_first_error_propagates_by_default():
    def boom(n: int) -> int:
        if n == 1:
            raise KeyError("bad")
        return n

    with pytest.raises(KeyError):
        p_map([0, 1, 2], boom, concurrency=1)


def test_errors_are_grouped_when_not_stopping():
    seen: list[int] = []

    def boom(n: int) -> int:
        seen.append(n)
        if n % 2:
            raise ValueError(str(n))
        return n

    with pytest.raises(ExceptionGroup) as ei:
        p_map(range(4), boom, concurrency=2, stop_on_error=False)
    assert sorted(seen) == [0, 1, 2, 3]
    assert sorted(str(e) for e in ei.value.exceptions) == ["1", "3"]


def test_settled_isolates_failures():
    def maybe(n: int) -> int:
        if n == 2:
            raise RuntimeError("nope")
        return n + 1

    out = p_map_settled([1, 2, 3], maybe, concurrency=2)
    assert [s.item for s in out] == [1, 2, 3]
    assert [s.ok for s in out] == [True, False, True]
    assert [s.value for s in out] == [2, None, 4]
    assert isinstance(out[1].error, RuntimeError)


@pytest.mark.parametrize("bad", [0, -1, True])
def test_invalid_concurrency(bad):
    with pytest.raises(ValueError):
        p_map([1], lambda n: n, concurrency=bad)
