"""
Operation - A cancellable, dependency-aware asynchronous unit of work.
Operation —— 可取消、感知依赖的异步工作单元。

An operation is a composition of:
  - an OperationStateMachine (READY -> EXECUTING -> FINISHED, thread-safe)
  - a monotonic `cancelled` flag with its own observer list
  - a work function supplied at construction time (the `main` body)
  - a tuple of prerequisite operations

一个操作由以下部分组合而成：
  - OperationStateMachine（READY -> EXECUTING -> FINISHED，线程安全）
  - 单调的 `cancelled` 标志及其观察者列表
  - 构造时必须提供的工作函数（即 `main` 工作体）
  - 前置依赖操作元组

Lifecycle contract:
生命周期契约：
  start()  is called exactly once by the queue on a worker thread.
  main()   runs the work function, which may finish synchronously or hand off
           to a timer / another executor and return immediately.
  finish() may be called later from any thread; only the first call counts.

  start()  由队列在工作线程上恰好调用一次。
  main()   执行工作函数，工作函数可以同步完成，也可以移交给定时器/其他执行器后立即返回。
  finish() 之后可能在任意线程上被调用；只有第一次调用生效。

Every work function MUST call `operation.finish()` on every code path,
including its own cancellation check. A body that never does leaves the
operation EXECUTING forever; nothing detects that at runtime.
每个工作函数都必须在所有代码路径上调用 `operation.finish()`（包括自身的取消检查分支），
否则操作将永远停留在 EXECUTING，运行时无法检测到。
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable

from operation.errors import DependencyError
from operation.state_machine import OperationStateMachine, StateObserver
from schema import ChangePhase, OperationSnapshot, OperationState, StateChange

logger = logging.getLogger(__name__)

WorkFunction = Callable[["Operation"], None]
CancelObserver = Callable[["Operation"], None]

_id_counter = itertools.count(1)


class Operation:
    """
    A schedulable unit of work with a three-state lifecycle.
    拥有三态生命周期的可调度工作单元。

    Variants are built by supplying different work functions, not by subclassing:
    通过提供不同的工作函数来构造不同的变体，而不是继承：

        op = Operation(lambda o: o.finish(), name="noop")
    """

    def __init__(
        self,
        work: WorkFunction,
        name: str | None = None,
        op_id: str | None = None,
        on_cancel: CancelObserver | None = None,
    ):
        """
        Args:
            work:      Work function called with this operation; must eventually call finish().
            name:      Display name (defaults to the id).
            op_id:     Unique id (defaults to 'op_<n>').
            on_cancel: Replaces the default did_cancel() behavior (which is finish()).
            work:      工作函数，以本操作为参数调用；必须最终调用 finish()。
            name:      展示名称（默认与 ID 相同）。
            op_id:     唯一 ID（默认 'op_<n>'）。
            on_cancel: 替换默认的 did_cancel() 行为（默认行为是 finish()）。
        """
        if not callable(work):
            raise TypeError(f"work must be callable, got {type(work).__name__}")
        self.id = op_id or f"op_{next(_id_counter)}"
        self.name = name or self.id
        self._work = work
        self._on_cancel = on_cancel
        self.error: BaseException | None = None  # 工作体抛出的异常，由队列记录

        self._sm = OperationStateMachine(self.id)
        self._dependencies: list[Operation] = []
        self._deps_lock = threading.Lock()

        self._cancelled = False
        self._cancel_lock = threading.Lock()
        self._cancel_observers: list[CancelObserver] = []
        self._finished_event = threading.Event()

        # 订阅自身状态以唤醒 wait()，订阅自身取消标志以触发 did_cancel()。
        # 这是把「执行期间才到达的取消」转换为完成事件的唯一机制。
        self._sm.subscribe(self._on_own_state_change)
        self.subscribe_cancel(self._on_own_cancel)

    def __repr__(self) -> str:
        return f"<Operation {self.name} ({self.id}) {self.state.value}{' cancelled' if self.is_cancelled else ''}>"

    # ------------------------------------------------------------------
    # Read-only views (used by the queue)
    # 只读视图（供队列使用）
    # ------------------------------------------------------------------

    @property
    def state(self) -> OperationState:
        return self._sm.read()

    @property
    def is_ready(self) -> bool:
        return self.state == OperationState.READY

    @property
    def is_executing(self) -> bool:
        return self.state == OperationState.EXECUTING

    @property
    def is_finished(self) -> bool:
        return self.state == OperationState.FINISHED

    @property
    def is_cancelled(self) -> bool:
        with self._cancel_lock:
            return self._cancelled

    @property
    def dependencies(self) -> tuple[Operation, ...]:
        with self._deps_lock:
            return tuple(self._dependencies)

    def snapshot(self) -> OperationSnapshot:
        return OperationSnapshot(
            id=self.id,
            name=self.name,
            state=self.state,
            cancelled=self.is_cancelled,
            dependency_ids=[d.id for d in self.dependencies],
            error=repr(self.error) if self.error is not None else None,
        )

    # ------------------------------------------------------------------
    # Dependencies
    # 依赖管理
    # ------------------------------------------------------------------

    def add_dependency(self, operation: Operation) -> None:
        """
        Declare `operation` as a prerequisite. Only valid while this operation is READY.
        声明 `operation` 为前置依赖。仅当本操作处于 READY 时合法。

        Edges point from dependent to prerequisite only; the graph is acyclic
        by contract, and the queue rejects cycles at submission time.
        引用方向只从依赖方指向前置操作；图按约定无环，队列在提交时拒绝环。
        """
        if not isinstance(operation, Operation):
            raise DependencyError(f"Dependency must be an Operation, got {type(operation).__name__}")
        if operation is self:
            raise DependencyError(f"Operation '{self.id}' cannot depend on itself")
        with self._deps_lock:
            if not self.is_ready:
                raise DependencyError(
                    f"Cannot add dependency to '{self.id}': state is {self.state.value} (must be ready)"
                )
            if operation in self._dependencies:
                return
            self._dependencies.append(operation)
        logger.debug("[Op] %s now depends on %s", self.id, operation.id)

    def remove_dependency(self, operation: Operation) -> None:
        with self._deps_lock:
            if not self.is_ready:
                raise DependencyError(
                    f"Cannot remove dependency from '{self.id}': state is {self.state.value} (must be ready)"
                )
            if operation in self._dependencies:
                self._dependencies.remove(operation)

    def has_cancelled_dependencies(self) -> bool:
        """
        True if any *direct* prerequisite currently reports cancelled (point-in-time read).
        若任一直接前置依赖当前处于已取消状态则返回 True（瞬时读取，不是订阅）。
        """
        return any(dep.is_cancelled for dep in self.dependencies)

    # ------------------------------------------------------------------
    # Lifecycle
    # 生命周期
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Entry point invoked by the queue exactly once, on a worker thread.
        队列在工作线程上恰好调用一次的入口。

          1. Cancelled (itself or a direct dependency) -> READY -> FINISHED, body never runs.
          2. Otherwise READY -> EXECUTING, then main().
          1. 自身或直接依赖已取消 -> 直接 READY -> FINISHED，工作体不会执行。
          2. 否则 READY -> EXECUTING，然后调用 main()。
        """
        if self.has_cancelled_dependencies():
            logger.info("[Op] %s has a cancelled dependency, finishing without running", self.id)
            self.finish()
            return
        if self.is_cancelled:
            logger.info("[Op] %s was cancelled before start, finishing without running", self.id)
            self.finish()
            return

        # 若取消恰好在检查之后到达，did_cancel() 可能已将操作置为 FINISHED，此时转移被忽略
        if not self._sm.request_transition(OperationState.EXECUTING):
            logger.debug("[Op] %s finished concurrently with start, body skipped", self.id)
            return
        self.main()

    def main(self) -> None:
        self._work(self)

    def finish(self) -> None:
        """Drive the operation to FINISHED. Idempotent and safe from any thread."""
        self._sm.request_transition(OperationState.FINISHED)

    def cancel(self) -> None:
        """
        Mark the operation cancelled. Monotonic; observers fire on the first call only.
        标记操作为已取消。单调不可逆；仅第一次调用会通知观察者。

        Cancellation is cooperative: a body that is already running is not
        interrupted, but did_cancel() still drives the operation to FINISHED.
        取消是协作式的：已在运行的工作体不会被中断，但 did_cancel() 仍会把操作推进到 FINISHED。
        """
        with self._cancel_lock:
            if self._cancelled:
                return
            self._cancelled = True
            observers = list(self._cancel_observers)
        logger.info("[Op] %s cancelled (state=%s)", self.id, self.state.value)
        for observer in observers:
            try:
                observer(self)
            except Exception:
                logger.exception("[Op] %s: cancel observer failed", self.id)

    def did_cancel(self) -> None:
        if self._on_cancel is not None:
            self._on_cancel(self)
        else:
            self.finish()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until FINISHED. Returns False on timeout."""
        return self._finished_event.wait(timeout)

    # ------------------------------------------------------------------
    # Subscriptions
    # 订阅
    # ------------------------------------------------------------------

    def subscribe(self, observer: StateObserver) -> None:
        self._sm.subscribe(observer)

    def unsubscribe(self, observer: StateObserver) -> None:
        self._sm.unsubscribe(observer)

    def subscribe_cancel(self, observer: CancelObserver) -> None:
        with self._cancel_lock:
            self._cancel_observers.append(observer)

    def unsubscribe_cancel(self, observer: CancelObserver) -> None:
        with self._cancel_lock:
            if observer in self._cancel_observers:
                self._cancel_observers.remove(observer)

    def _on_own_cancel(self, _operation: Operation) -> None:
        self.did_cancel()

    def _on_own_state_change(self, change: StateChange) -> None:
        if change.new_state == OperationState.FINISHED and change.phase == ChangePhase.DID_CHANGE:
            self._finished_event.set()
            # FINISHED 是终态：撤销构造时的自订阅，此后的 cancel() 不再触发 did_cancel()
            self.unsubscribe_cancel(self._on_own_cancel)
            self._sm.unsubscribe(self._on_own_state_change)
