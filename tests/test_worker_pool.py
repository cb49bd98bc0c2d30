from __future__ import annotations

import multiprocessing
import time

import pytest

from engine.errors import RunCancelled
from engine.worker_pool import CancelToken, WorkerPool

_INIT_CALLS: list[int] = []


def _square(payload: int, token: CancelToken) -> int:
    token.raise_if_cancelled()
    return payload * payload


def _spin(payload: int, token: CancelToken) -> int:
    while True:
        token.raise_if_cancelled()
        time.sleep(0.005)


def _fail(payload: int, token: CancelToken) -> int:
    raise ValueError(f"bad payload {payload}")


def _mark_init(tag: int) -> None:
    _INIT_CALLS.append(tag)


def test_cancel_token_deadline_with_fake_clock():
    now = [0.0]
    token = CancelToken(10.0, clock=lambda: now[0])
    token.raise_if_cancelled()
    now[0] = 9.9
    assert not token.cancelled
    now[0] = 10.0
    assert token.cancelled
    with pytest.raises(RunCancelled):
        token.raise_if_cancelled()


def test_cancel_token_without_timeout_only_explicit():
    token = CancelToken()
    assert not token.cancelled
    token.cancel()
    assert token.cancelled


def test_inline_pool_returns_results_in_order():
    with WorkerPool(_square, max_workers=1, timeout_secs=5) as pool:
        assert pool.inline
        outcomes = pool.run_batch([1, 2, 3], start_index=10)
    assert [o.value for o in outcomes] == [1, 4, 9]
    assert [o.index for o in outcomes] == [10, 11, 12]
    assert all(o.ok for o in outcomes)


def test_inline_pool_timeout_marks_task():
    pool = WorkerPool(_spin, max_workers=1, timeout_secs=0.05)
    outcomes = pool.run_batch([1])
    assert outcomes[0].status == "timeout"
    assert not outcomes[0].ok


def test_task_errors_do_not_raise():
    pool = WorkerPool(_fail, max_workers=1, timeout_secs=5)
    outcomes = pool.run_batch([7])
    assert outcomes[0].status == "error"
    assert "bad payload 7" in outcomes[0].error


def test_inline_initializer_runs_once():
    _INIT_CALLS.clear()
    pool = WorkerPool(_square, max_workers=1, initializer=_mark_init, initargs=(1,))
    pool.run_batch([1])
    pool.run_batch([2])
    assert _INIT_CALLS == [1]


def test_process_pool_runs_batch():
    with WorkerPool(_square, max_workers=2, timeout_secs=30) as pool:
        outcomes = pool.run_batch([2, 3, 4])
    assert [o.value for o in outcomes] == [4, 9, 16]


def test_empty_batch():
    assert WorkerPool(_square, max_workers=1).run_batch([]) == []


def test_invalid_worker_count():
    with pytest.raises(ValueError):
        WorkerPool(_square, max_workers=-1)


def _hang(payload: int, token: CancelToken) -> int:
    # 不检查令牌
    time.sleep(3600)
    return payload


def test_hung_worker_is_killed_after_backstop():
    before = set(multiprocessing.active_children())
    pool = WorkerPool(_hang, max_workers=2, timeout_secs=0.5, grace_secs=0.5)
    t0 = time.monotonic()
    outcomes = pool.run_batch([1])
    assert time.monotonic() - t0 < 30
    assert outcomes[0].status == "timeout"

    leftover = [p for p in multiprocessing.active_children() if p not in before]
    assert leftover == []

    # 下一批会重建进程池
    pool.fn = _square
    with pool:
        assert [o.value for o in pool.run_batch([3])] == [9]
