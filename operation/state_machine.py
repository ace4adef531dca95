"""
Operation State Machine - Validates and enforces operation lifecycle transitions.
操作状态机 —— 校验并强制执行操作生命周期的合法状态转移。

The transition table is the single source of truth for what state changes
are legal. Completion is idempotent: once FINISHED, every further request is
silently ignored. Any other illegal request raises InvalidTransitionError.
转移表是合法状态变化的唯一权威来源。
完成是幂等的：进入 FINISHED 后的所有请求都被静默忽略；其他非法请求抛出 InvalidTransitionError。

Transition graph:
转移图：
    READY ──> EXECUTING ──> FINISHED
    READY ────────────────> FINISHED   (short-circuit on cancellation / 取消时直接完成)

Locking rule: observers are NEVER invoked while the state lock is held,
so an observer may re-enter the machine (e.g. call finish()) without deadlock.
加锁规则：持有状态锁时绝不调用观察者，观察者可以安全地重入状态机（例如调用 finish()）。
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from operation.errors import InvalidTransitionError
from schema import ChangePhase, OperationState, StateChange

logger = logging.getLogger(__name__)

StateObserver = Callable[[StateChange], None]


# The full transition table — readable at a glance.
# 完整的状态转移表——一目了然地看清所有合法转移路径。
VALID_TRANSITIONS: dict[OperationState, set[OperationState]] = {
    OperationState.READY:     {OperationState.EXECUTING, OperationState.FINISHED},
    OperationState.EXECUTING: {OperationState.FINISHED},
    # Terminal state — requests are ignored, not rejected
    # 终态——后续请求被忽略而不是报错
    OperationState.FINISHED:  set(),
}


class OperationStateMachine:
    """
    Thread-safe holder of one operation's lifecycle state.
    单个操作生命周期状态的线程安全持有者。

    Provides:
      1. read()               -- locked snapshot of the state
      2. request_transition() -- validate against VALID_TRANSITIONS, mutate under the lock
      3. subscribe()          -- explicit observer list, notified outside the lock

    提供：
      1. read()               —— 加锁读取当前状态快照
      2. request_transition() —— 按转移表校验，并在锁内修改状态
      3. subscribe()          —— 显式观察者列表，在锁外发送通知
    """

    def __init__(self, owner_id: str, on_change: StateObserver | None = None):
        """
        Args:
            owner_id:  ID of the owning operation, copied into every StateChange.
            on_change: Optional first observer.
            owner_id:  所属操作的 ID，会写入每条 StateChange。
            on_change: 可选的初始观察者。
        """
        self._owner_id = owner_id
        self._state = OperationState.READY
        self._lock = threading.Lock()            # 只保护 _state
        self._observers: list[StateObserver] = []
        self._observers_lock = threading.Lock()  # 只保护观察者列表，通知时不持有
        if on_change is not None:
            self._observers.append(on_change)

    # ------------------------------------------------------------------
    # Reads
    # 读取
    # ------------------------------------------------------------------

    def read(self) -> OperationState:
        with self._lock:
            return self._state

    @property
    def state(self) -> OperationState:
        return self.read()

    def can_transition(self, new_state: OperationState) -> bool:
        """
        Check whether moving to `new_state` is legal from the current state.
        检查从当前状态转移到 `new_state` 是否合法。
        """
        return new_state in VALID_TRANSITIONS[self.read()]

    # ------------------------------------------------------------------
    # Transitions
    # 状态转移
    # ------------------------------------------------------------------

    def request_transition(self, new_state: OperationState) -> bool:
        """
        Apply a state transition.
        应用一次状态转移。

        Returns True if the state changed, False if the request was ignored
        because the machine is already FINISHED (possibly finished by another
        thread between the will-change notification and the mutation).
        Raises InvalidTransitionError for any pair outside the table.

        状态确实改变时返回 True；若状态机已处于 FINISHED（包括在 will_change
        通知与真正修改之间被其他线程完成）则忽略请求并返回 False。
        转移表之外的组合抛出 InvalidTransitionError。
        """
        current = self.read()
        if current == OperationState.FINISHED:
            return False
        self._check(current, new_state)

        self._notify(StateChange(
            operation_id=self._owner_id,
            phase=ChangePhase.WILL_CHANGE,
            old_state=current,
            new_state=new_state,
        ))

        with self._lock:
            old_state = self._state
            if old_state == OperationState.FINISHED:
                applied = False
            elif new_state in VALID_TRANSITIONS[old_state]:
                self._state = new_state
                applied = True
            else:
                applied = None  # 竞争中被其他线程推进到不兼容的状态

        if applied is None:
            self._check(old_state, new_state)
        if not applied:
            logger.debug("[SM] %s: %s request ignored (already finished)", self._owner_id, new_state.value)
            return False

        logger.debug("[SM] %s: %s -> %s", self._owner_id, old_state.value, new_state.value)
        self._notify(StateChange(
            operation_id=self._owner_id,
            phase=ChangePhase.DID_CHANGE,
            old_state=old_state,
            new_state=new_state,
        ))
        return True

    def _check(self, current: OperationState, new_state: OperationState) -> None:
        if new_state not in VALID_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Operation '{self._owner_id}': cannot transition from {current.value} to {new_state.value}. "
                f"Valid targets: {sorted(s.value for s in VALID_TRANSITIONS[current])}"
            )

    # ------------------------------------------------------------------
    # Observers
    # 观察者
    # ------------------------------------------------------------------

    def subscribe(self, observer: StateObserver) -> None:
        with self._observers_lock:
            self._observers.append(observer)

    def unsubscribe(self, observer: StateObserver) -> None:
        with self._observers_lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def _notify(self, change: StateChange) -> None:
        # 先复制列表再逐个调用：通知期间不持有任何锁
        with self._observers_lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(change)
            except Exception:
                logger.exception(
                    "[SM] %s: observer failed on %s %s -> %s",
                    self._owner_id, change.phase.value, change.old_state.value, change.new_state.value,
                )
