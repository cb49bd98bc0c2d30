"""有界进程池：一次提交一批任务，每个任务带独立的超时取消令牌。

- 池大小默认 `cpu_count - 1`（至少 1），给主进程留一个核；
- 任务函数签名 `fn(payload, token)`，应在循环里调用 `token.raise_if_cancelled()`；
- 任务异常、超时、子进程异常退出都转成 `TaskOutcome`，不会向上抛，也不会重试；
- 超过兜底时限仍未返回的任务（不检查令牌的死循环等）连同整个进程池一起被 kill，下一批重建；
- `max_workers == 1` 时在当前进程内串行执行（调试/测试用）。
"""

from __future__ import annotations

import math
import os
import time
import traceback
from concurrent.futures import Future, ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from engine.errors import RunCancelled
from shared.utils.logging import setup_logger

# 子进程启动/序列化的额外宽限时间
_BACKSTOP_GRACE_SECS = 30.0


class CancelToken:
    """协作式取消令牌：到达 deadline 或被显式 cancel 后，下一次检查即抛 RunCancelled。"""

    def __init__(self, timeout_secs: float | None = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._deadline = clock() + float(timeout_secs) if timeout_secs else None
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled("run cancelled (timeout)" if not self._cancelled else "run cancelled")


@dataclass(frozen=True)
class TaskOutcome:
    index: int
    payload: Any
    status: str  # "ok" / "error" / "timeout"
    value: Any = None
    error: str | None = None
    duration_secs: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def _invoke(fn: Callable[[Any, CancelToken], Any], index: int, payload: Any, timeout_secs: float) -> TaskOutcome:
    t0 = time.perf_counter()
    token = CancelToken(timeout_secs)
    try:
        value = fn(payload, token)
    except RunCancelled as exc:
        return TaskOutcome(index, payload, "timeout", error=str(exc), duration_secs=time.perf_counter() - t0)
    except Exception as exc:
        return TaskOutcome(
            index,
            payload,
            "error",
            error=f"{type(exc).__name__}: {exc}\n{traceback.format_exc()}",
            duration_secs=time.perf_counter() - t0,
        )
    return TaskOutcome(index, payload, "ok", value=value, duration_secs=time.perf_counter() - t0)


def default_workers() -> int:
    return max(1, (os.cpu_count() or 1) - 1)


class WorkerPool:
    """进程池封装。

    Parameters
    ----------
    fn:
        模块级函数 `fn(payload, token)`（需要可 pickle）。
    max_workers:
        并发上限；None 使用 `cpu_count - 1`。
    timeout_secs:
        单个任务超时。
    initializer / initargs:
        每个子进程启动时执行一次（用于注入只读数据）。
    grace_secs:
        兜底等待在 `timeout_secs * 轮数` 之外的额外时间。
    """

    def __init__(
        self,
        fn: Callable[[Any, CancelToken], Any],
        *,
        max_workers: int | None = None,
        timeout_secs: float = 300.0,
        initializer: Callable[..., None] | None = None,
        initargs: tuple = (),
        grace_secs: float = _BACKSTOP_GRACE_SECS,
    ):
        self.fn = fn
        self.max_workers = int(max_workers) if max_workers else default_workers()
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.timeout_secs = float(timeout_secs)
        self.grace_secs = float(grace_secs)
        self.initializer = initializer
        self.initargs = initargs
        self.logger = setup_logger("worker-pool")
        self._executor: ProcessPoolExecutor | None = None
        self._inline_ready = False

    @property
    def inline(self) -> bool:
        return self.max_workers == 1

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()

    def _ensure_executor(self) -> ProcessPoolExecutor:
        if self._executor is None:
            self._executor = ProcessPoolExecutor(
                max_workers=self.max_workers,
                initializer=self.initializer,
                initargs=self.initargs,
            )
        return self._executor

    def _discard_executor(self) -> None:
        """丢弃当前进程池并 kill 全部子进程（不检查令牌的任务不会自己退出）。"""
        executor, self._executor = self._executor, None
        if executor is None:
            return
        procs = list((executor._processes or {}).values())
        for p in procs:
            if p.is_alive():
                p.kill()
        executor.shutdown(wait=False, cancel_futures=True)
        for p in procs:
            p.join(timeout=5)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None

    def run_batch(self, payloads: Sequence[Any], start_index: int = 0) -> list[TaskOutcome]:
        """执行一批任务，按提交顺序返回结果。"""
        if not payloads:
            return []
        if self.inline:
            return self._run_inline(payloads, start_index)

        executor = self._ensure_executor()
        futures: list[Future] = [
            executor.submit(_invoke, self.fn, start_index + i, p, self.timeout_secs)
            for i, p in enumerate(payloads)
        ]
        rounds = math.ceil(len(payloads) / self.max_workers)
        backstop = self.timeout_secs * rounds + self.grace_secs
        done, not_done = wait(futures, timeout=backstop)

        outcomes: list[TaskOutcome] = []
        broken = False
        for i, (fut, payload) in enumerate(zip(futures, payloads)):
            idx = start_index + i
            if fut in not_done:
                fut.cancel()
                broken = True
                outcomes.append(TaskOutcome(idx, payload, "timeout", error="worker did not finish before deadline"))
                continue
            try:
                outcomes.append(fut.result())
            except BrokenProcessPool as exc:
                broken = True
                outcomes.append(TaskOutcome(idx, payload, "error", error=f"worker process died: {exc}"))
            except Exception as exc:
                outcomes.append(TaskOutcome(idx, payload, "error", error=f"{type(exc).__name__}: {exc}"))

        if broken:
            self.logger.warning("Worker pool unhealthy after batch; recreating processes.")
            self._discard_executor()
        return outcomes

    def _run_inline(self, payloads: Sequence[Any], start_index: int) -> list[TaskOutcome]:
        if not self._inline_ready:
            if self.initializer is not None:
                self.initializer(*self.initargs)
            self._inline_ready = True
        return [_invoke(self.fn, start_index + i, p, self.timeout_secs) for i, p in enumerate(payloads)]
