"""
Operation Queue - Dispatches operations on a worker-thread pool in dependency order.
操作队列 —— 按依赖顺序在工作线程池上派发操作。

Unlike a super-step loop that polls for ready nodes, the queue is event driven:
it subscribes to every operation's state and cancellation notifications and
re-evaluates pending operations whenever one of them finishes or is cancelled.
与轮询就绪节点的 Super-step 循环不同，队列是事件驱动的：
它订阅每个操作的状态与取消通知，每当有操作完成或被取消时重新评估待派发操作。

Readiness rule:
就绪规则：
    READY and (cancelled or every dependency FINISHED)
    READY 且（已取消 或 所有依赖均已 FINISHED）

  - Cancelled operations are drained immediately, regardless of dependencies,
    because their start() short-circuits to FINISHED.
  - Dependencies not owned by this queue must finish elsewhere.
  - 已取消的操作无视依赖立即派发，因为其 start() 会直接短路到 FINISHED。
  - 不属于本队列的依赖需要在别处完成。

Concurrency cap counts *in-flight* operations (dispatched, not yet FINISHED),
so a body that handed its work off to a timer keeps occupying a slot.
并发上限统计「在途」操作（已派发但尚未 FINISHED），
因此把工作移交给定时器的操作在完成前仍然占用一个槽位。
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable

import config
from operation.base import Operation
from operation.errors import DependencyCycleError, QueueError
from schema import ChangePhase, OperationSnapshot, OperationState, StateChange

logger = logging.getLogger(__name__)


class OperationQueue:
    """
    Owns a registry of operations and dispatches start() once readiness holds.
    持有操作注册表，在就绪条件满足时派发 start()。

    The registry is id-indexed (`dict[id, Operation]`). Operations reference only
    their prerequisites; the queue's observers are removed when an operation retires.
    注册表按 ID 索引；操作只引用其前置依赖，队列的观察者在操作回收时被移除。
    """

    def __init__(
        self,
        max_concurrent: int | None = None,
        max_workers: int | None = None,
        name: str = "queue",
        on_event: Callable[[str, Any], None] | None = None,
    ):
        """
        Args:
            max_concurrent: Cap on in-flight operations; None -> config, 0 -> unlimited.
            max_workers:    Thread-pool size for start(); None -> config.WORKER_THREADS.
            name:           Queue name, used for worker thread names and logs.
            on_event:       Optional callback(event, data) for UI updates.
            max_concurrent: 在途操作上限；None 取配置值，0 表示不限制。
            max_workers:    执行 start() 的线程池大小；None 取 config.WORKER_THREADS。
            name:           队列名称，用于线程名与日志。
            on_event:       可选事件回调 callback(event, data)，用于 UI 实时更新。
        """
        self.name = name
        self._max_concurrent = config.MAX_CONCURRENT_OPERATIONS if max_concurrent is None else max_concurrent
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or config.WORKER_THREADS,
            thread_name_prefix=f"{name}-worker",
        )
        self._on_event = on_event

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)  # 注册表清空时通知等待者
        self._operations: dict[str, Operation] = {}   # 未完成操作的注册表
        self._pending: list[str] = []                 # 已提交、尚未派发（保持提交顺序）
        self._in_flight: set[str] = set()             # 已派发、尚未 FINISHED
        self._external: dict[str, Operation] = {}     # 已订阅的外部依赖（不属于本队列）
        self._accepting = True
        self._pool_closed = False

    def __enter__(self) -> OperationQueue:
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Properties
    # 属性
    # ------------------------------------------------------------------

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @max_concurrent.setter
    def max_concurrent(self, value: int) -> None:
        if value < 0:
            raise ValueError("max_concurrent must be >= 0")
        with self._lock:
            self._max_concurrent = value
        self._schedule()

    @property
    def operations(self) -> tuple[Operation, ...]:
        with self._lock:
            return tuple(self._operations.values())

    @property
    def operation_count(self) -> int:
        with self._lock:
            return len(self._operations)

    # ------------------------------------------------------------------
    # Submission
    # 提交
    # ------------------------------------------------------------------

    def add_operation(self, operation: Operation) -> None:
        self.add_operations([operation])

    def add_operations(self, operations: Iterable[Operation], wait_until_finished: bool = False) -> None:
        """
        Hand a batch of operations (any order) to the scheduler.
        把一批操作（顺序任意）交给调度器。

        The whole batch is rejected, and nothing is enqueued, if an operation
        was already submitted or started, or if the batch closes a dependency cycle.
        若有操作已提交/已启动，或该批操作形成依赖环，则整批拒绝，不入队任何操作。
        """
        batch = list(operations)

        # 先订阅再入注册表：一旦入表，其他线程的 _schedule() 就可能派发它，
        # 完成通知必须已有人接收。入表前到达的通知因 ID 未知被忽略，
        # 此时已完成的操作留在 _pending 中，由 _schedule() 回收。
        for op in batch:
            op.subscribe(self._on_state_change)
            op.subscribe_cancel(self._on_cancel)
        try:
            self._register(batch)
        except Exception:
            for op in batch:
                op.unsubscribe(self._on_state_change)
                op.unsubscribe_cancel(self._on_cancel)
            raise

        for op in batch:
            self._watch_external_dependencies(op)
            logger.debug("[Queue] %s: added %s (deps=%s)", self.name, op.id, [d.id for d in op.dependencies])
            self._emit("operation_added", {"operation": op})

        self._schedule()

        if wait_until_finished:
            for op in batch:
                op.wait()

    submit = add_operations

    def _register(self, batch: list[Operation]) -> None:
        with self._lock:
            if not self._accepting:
                raise QueueError(f"Queue '{self.name}' is shut down")
            seen: set[str] = set()
            for op in batch:
                if op.id in self._operations or op.id in seen:
                    raise QueueError(f"Operation '{op.id}' was already submitted")
                # 提交前已取消的操作可能已被 did_cancel() 完成，仍然接受并直接回收
                if op.is_executing or (op.is_finished and not op.is_cancelled):
                    raise QueueError(f"Operation '{op.id}' is {op.state.value}; only ready or cancelled operations can be queued")
                seen.add(op.id)
            self._check_acyclic(list(self._operations.values()) + batch)

            for op in batch:
                self._operations[op.id] = op
                self._pending.append(op.id)

    @staticmethod
    def _check_acyclic(operations: list[Operation]) -> None:
        """
        Kahn's algorithm over the id registry; raises DependencyCycleError on a cycle.
        在 ID 注册表上运行 Kahn 算法；存在环时抛出 DependencyCycleError。
        只考虑同属本队列的依赖边。
        """
        by_id = {op.id: op for op in operations}
        in_degree: dict[str, int] = {op_id: 0 for op_id in by_id}
        dependents: dict[str, list[str]] = {op_id: [] for op_id in by_id}
        for op in operations:
            for dep in op.dependencies:
                if dep.id in by_id:
                    in_degree[op.id] += 1
                    dependents[dep.id].append(op.id)

        queue = deque(op_id for op_id, deg in in_degree.items() if deg == 0)
        visited = 0
        while queue:
            op_id = queue.popleft()
            visited += 1
            for child in dependents[op_id]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if visited != len(by_id):
            raise DependencyCycleError(sorted(op_id for op_id, deg in in_degree.items() if deg > 0))

    # ------------------------------------------------------------------
    # Scheduling
    # 调度
    # ------------------------------------------------------------------

    def _schedule(self) -> None:
        """
        Retire operations that finished while pending, then dispatch every ready one
        the concurrency cap allows.
        回收在等待期间已完成的操作，然后在并发上限允许范围内派发所有就绪操作。
        """
        to_start: list[Operation] = []
        retired: list[Operation] = []
        with self._lock:
            if self._pool_closed:
                return
            for op_id in list(self._pending):
                op = self._operations[op_id]
                if op.is_finished:
                    # 等待期间被取消：did_cancel() 已将其完成，无需调用 start()
                    self._forget_locked(op_id)
                    retired.append(op)
                    continue
                if op.is_cancelled:
                    self._pending.remove(op_id)
                    self._in_flight.add(op_id)
                    to_start.append(op)
                    continue
                if not all(dep.is_finished for dep in op.dependencies):
                    continue
                if self._max_concurrent and len(self._in_flight) >= self._max_concurrent:
                    continue
                self._pending.remove(op_id)
                self._in_flight.add(op_id)
                to_start.append(op)
            idle = not self._operations

        for i, op in enumerate(retired):
            self._after_retire(op, idle and i == len(retired) - 1)
        for op in to_start:
            logger.info("[Queue] %s: dispatching %s", self.name, op.id)
            try:
                self._pool.submit(self._run, op)
            except RuntimeError:
                logger.warning("[Queue] %s: pool closed, %s not dispatched", self.name, op.id)

    def _run(self, op: Operation) -> None:
        """
        Worker-thread body: start() the operation, finishing it if the work function raised.
        工作线程主体：调用 start()；若工作函数抛出异常，记录并强制完成，避免阻塞下游。
        """
        self._emit("operation_dispatched", {"operation": op})
        try:
            op.start()
        except Exception as exc:
            logger.exception("[Queue] %s: operation %s raised", self.name, op.id)
            op.error = exc
            self._emit("operation_failed", {"operation": op, "error": exc})
            op.finish()

    # ------------------------------------------------------------------
    # Observers
    # 观察者回调
    # ------------------------------------------------------------------

    def _on_state_change(self, change: StateChange) -> None:
        if change.phase != ChangePhase.DID_CHANGE or change.new_state != OperationState.FINISHED:
            return
        with self._lock:
            op = self._operations.get(change.operation_id)
            if op is None:
                return
            self._forget_locked(op.id)
            idle = not self._operations
        self._after_retire(op, idle)
        self._schedule()

    def _watch_external_dependencies(self, op: Operation) -> None:
        """
        Subscribe to prerequisites owned elsewhere so their completion also wakes the scheduler.
        订阅不属于本队列的前置依赖，使其完成时同样触发重新调度。
        """
        for dep in op.dependencies:
            with self._lock:
                if dep.is_finished or dep.id in self._operations or dep.id in self._external:
                    continue
                self._external[dep.id] = dep
            dep.subscribe(self._on_external_change)
            # 检查与订阅之间依赖可能已完成，此时通知不会再到达
            if dep.is_finished:
                with self._lock:
                    self._external.pop(dep.id, None)
                dep.unsubscribe(self._on_external_change)

    def _on_external_change(self, change: StateChange) -> None:
        if change.phase != ChangePhase.DID_CHANGE or change.new_state != OperationState.FINISHED:
            return
        with self._lock:
            dep = self._external.pop(change.operation_id, None)
        if dep is not None:
            dep.unsubscribe(self._on_external_change)
        self._schedule()

    def _on_cancel(self, _operation: Operation) -> None:
        # 取消可能让一个依赖未满足的操作立即可派发
        self._schedule()

    def _forget_locked(self, op_id: str) -> None:
        del self._operations[op_id]
        if op_id in self._pending:
            self._pending.remove(op_id)
        self._in_flight.discard(op_id)
        if not self._operations:
            self._idle.notify_all()

    def _after_retire(self, op: Operation, idle: bool) -> None:
        op.unsubscribe(self._on_state_change)
        op.unsubscribe_cancel(self._on_cancel)
        logger.info("[Queue] %s: %s finished%s", self.name, op.id, " (cancelled)" if op.is_cancelled else "")
        self._emit("operation_finished", {"operation": op})
        if idle:
            self._emit("queue_idle", {"queue": self.name})

    def _emit(self, event: str, data: Any) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event, data)
        except Exception:
            logger.exception("[Queue] %s: event callback failed for %s", self.name, event)

    # ------------------------------------------------------------------
    # Control
    # 控制
    # ------------------------------------------------------------------

    def cancel_all_operations(self) -> None:
        """Cancel every operation that has not finished yet."""
        for op in self.operations:
            op.cancel()

    def wait_until_all_operations_finished(self, timeout: float | None = None) -> bool:
        """
        Block until the registry is empty. Returns False on timeout.
        阻塞直到注册表为空；超时返回 False。
        """
        with self._idle:
            return self._idle.wait_for(lambda: not self._operations, timeout)

    async def join(self, timeout: float | None = None) -> bool:
        """Awaitable variant of wait_until_all_operations_finished() for asyncio callers."""
        return await asyncio.to_thread(self.wait_until_all_operations_finished, timeout)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        """
        Stop accepting operations and release the worker pool.
        停止接收新操作并释放工作线程池。

        With wait=True, blocks until every submitted operation finished first.
        wait=True 时先阻塞等待所有已提交操作完成。
        """
        with self._lock:
            self._accepting = False
        if cancel_pending:
            self.cancel_all_operations()
        if wait:
            self.wait_until_all_operations_finished()
        with self._lock:
            self._pool_closed = True
        self._pool.shutdown(wait=wait)
        logger.debug("[Queue] %s: shut down", self.name)

    # ------------------------------------------------------------------
    # Display helpers
    # 展示辅助方法
    # ------------------------------------------------------------------

    def snapshot(self) -> list[OperationSnapshot]:
        return [op.snapshot() for op in self.operations]

    def summary(self) -> str:
        """
        One-line summary for logging, e.g. Queue[main: 3 operations: 1 executing, 2 ready]
        生成单行状态摘要，用于日志输出。
        """
        counts: dict[str, int] = {}
        for op in self.operations:
            counts[op.state.value] = counts.get(op.state.value, 0) + 1
        parts = [f"{v} {k}" for k, v in counts.items()]
        return f"Queue[{self.name}: {sum(counts.values())} operations: {', '.join(parts) or 'idle'}]"
