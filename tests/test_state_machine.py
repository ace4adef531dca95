"""
状态机测试 — 测试分别体现：
  1. 转移表 (Transition Table)
  2. 幂等完成 (Idempotent Completion)
  3. 锁外通知 (Notifications Outside the Lock)
  4. 并发转移 (Concurrent Transitions)

运行方式:
    python -m pytest tests/test_state_machine.py -v
"""

from __future__ import annotations

import threading

import pytest

from operation.errors import InvalidTransitionError
from operation.state_machine import VALID_TRANSITIONS, OperationStateMachine
from schema import ChangePhase, OperationState, StateChange


def _recording_machine() -> tuple[OperationStateMachine, list[StateChange]]:
    changes: list[StateChange] = []
    lock = threading.Lock()

    def record(change: StateChange) -> None:
        with lock:
            changes.append(change)

    return OperationStateMachine("op_test", on_change=record), changes


def _did_changes(changes: list[StateChange]) -> list[tuple[OperationState, OperationState]]:
    return [(c.old_state, c.new_state) for c in changes if c.phase == ChangePhase.DID_CHANGE]


# ======================================================================
# Test 1: 转移表
# ======================================================================


class TestTransitionTable:

    def test_table_matches_lifecycle(self):
        """READY 可以去 EXECUTING 或 FINISHED；EXECUTING 只能去 FINISHED；FINISHED 是终态."""
        assert VALID_TRANSITIONS[OperationState.READY] == {OperationState.EXECUTING, OperationState.FINISHED}
        assert VALID_TRANSITIONS[OperationState.EXECUTING] == {OperationState.FINISHED}
        assert VALID_TRANSITIONS[OperationState.FINISHED] == set()

    def test_happy_path_notifies_will_then_did(self):
        sm, changes = _recording_machine()

        assert sm.read() == OperationState.READY
        assert sm.request_transition(OperationState.EXECUTING) is True
        assert sm.request_transition(OperationState.FINISHED) is True
        assert sm.state == OperationState.FINISHED

        assert [(c.phase, c.new_state) for c in changes] == [
            (ChangePhase.WILL_CHANGE, OperationState.EXECUTING),
            (ChangePhase.DID_CHANGE, OperationState.EXECUTING),
            (ChangePhase.WILL_CHANGE, OperationState.FINISHED),
            (ChangePhase.DID_CHANGE, OperationState.FINISHED),
        ]
        assert all(c.operation_id == "op_test" for c in changes)

    def test_ready_can_finish_directly(self):
        sm, changes = _recording_machine()
        assert sm.request_transition(OperationState.FINISHED) is True
        assert _did_changes(changes) == [(OperationState.READY, OperationState.FINISHED)]

    @pytest.mark.parametrize("setup, target", [
        ([], OperationState.READY),
        ([OperationState.EXECUTING], OperationState.EXECUTING),
        ([OperationState.EXECUTING], OperationState.READY),
    ])
    def test_illegal_transition_is_contract_violation(self, setup, target):
        """非法转移是内部契约违背：抛出 InvalidTransitionError（同时也是 AssertionError）."""
        sm, changes = _recording_machine()
        for state in setup:
            sm.request_transition(state)
        before = sm.read()
        notified = len(changes)

        with pytest.raises(InvalidTransitionError) as exc_info:
            sm.request_transition(target)

        assert isinstance(exc_info.value, AssertionError)
        assert sm.read() == before
        assert len(changes) == notified, "被拒绝的转移不应发出任何通知"

    def test_can_transition(self):
        sm, _ = _recording_machine()
        assert sm.can_transition(OperationState.EXECUTING)
        assert not sm.can_transition(OperationState.READY)
        sm.request_transition(OperationState.FINISHED)
        assert not sm.can_transition(OperationState.FINISHED)


# ======================================================================
# Test 2: 幂等完成
# ======================================================================


class TestIdempotentCompletion:

    @pytest.mark.parametrize("target", list(OperationState))
    def test_requests_after_finished_are_ignored(self, target):
        """FINISHED 之后的任何请求（包括自转移）都被静默忽略，不报错、不通知."""
        sm, changes = _recording_machine()
        sm.request_transition(OperationState.FINISHED)
        notified = len(changes)

        assert sm.request_transition(target) is False
        assert sm.read() == OperationState.FINISHED
        assert len(changes) == notified


# ======================================================================
# Test 3: 锁外通知
# ======================================================================


class TestNotificationsOutsideLock:

    def test_observer_can_reenter_machine(self):
        """
        观察者在 EXECUTING 的 did_change 中重入状态机（读取 + 请求 FINISHED）。
        若通知时仍持有状态锁，该线程将死锁。
        """
        sm = OperationStateMachine("op_reentrant")
        seen: list[OperationState] = []

        def reenter(change: StateChange) -> None:
            if change.phase == ChangePhase.DID_CHANGE and change.new_state == OperationState.EXECUTING:
                seen.append(sm.read())
                sm.request_transition(OperationState.FINISHED)

        sm.subscribe(reenter)
        worker = threading.Thread(target=sm.request_transition, args=(OperationState.EXECUTING,))
        worker.start()
        worker.join(timeout=2)

        assert not worker.is_alive(), "观察者重入导致死锁"
        assert seen == [OperationState.EXECUTING]
        assert sm.read() == OperationState.FINISHED

    def test_failing_observer_does_not_break_transition(self):
        sm = OperationStateMachine("op_noisy")
        calls: list[StateChange] = []

        def broken(change: StateChange) -> None:
            raise RuntimeError("observer bug")

        sm.subscribe(broken)
        sm.subscribe(calls.append)

        assert sm.request_transition(OperationState.EXECUTING) is True
        assert sm.read() == OperationState.EXECUTING
        assert len(calls) == 2, "后续观察者仍应收到 will/did 通知"

    def test_unsubscribe(self):
        sm, changes = _recording_machine()
        extra: list[StateChange] = []
        sm.subscribe(extra.append)
        sm.unsubscribe(extra.append)
        sm.unsubscribe(extra.append)  # 重复取消订阅是 no-op

        sm.request_transition(OperationState.FINISHED)
        assert extra == []
        assert len(changes) == 2


# ======================================================================
# Test 4: 并发转移
# ======================================================================


class TestConcurrentTransitions:

    def test_concurrent_finish_yields_exactly_one_transition(self):
        """N 个线程同时请求 FINISHED：只有一次可见的 -> FINISHED 转移，且没有契约违背."""
        for _ in range(20):
            sm, changes = _recording_machine()
            sm.request_transition(OperationState.EXECUTING)
            barrier = threading.Barrier(16)
            results: list[bool] = []
            errors: list[BaseException] = []

            def finish() -> None:
                barrier.wait()
                try:
                    results.append(sm.request_transition(OperationState.FINISHED))
                except Exception as exc:
                    errors.append(exc)

            threads = [threading.Thread(target=finish) for _ in range(16)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=5)

            assert errors == []
            assert results.count(True) == 1
            finished = [c for c in _did_changes(changes) if c[1] == OperationState.FINISHED]
            assert finished == [(OperationState.EXECUTING, OperationState.FINISHED)]

    def test_state_sequence_never_regresses(self):
        """
        一个线程请求 EXECUTING，多个线程请求 FINISHED，同时一个读线程不断采样：
        采样到的状态序列在 READY < EXECUTING < FINISHED 下单调不减。
        """
        for _ in range(20):
            sm = OperationStateMachine("op_race")
            barrier = threading.Barrier(6)
            samples: list[int] = []
            stop = threading.Event()

            def reader() -> None:
                while not stop.is_set():
                    samples.append(sm.read().rank)

            def request(state: OperationState) -> None:
                barrier.wait()
                sm.request_transition(state)

            sampler = threading.Thread(target=reader)
            sampler.start()
            writers = [threading.Thread(target=request, args=(OperationState.EXECUTING,))]
            writers += [threading.Thread(target=request, args=(OperationState.FINISHED,)) for _ in range(5)]
            for t in writers:
                t.start()
            for t in writers:
                t.join(timeout=5)
            stop.set()
            sampler.join(timeout=5)

            assert sm.read() == OperationState.FINISHED
            assert samples == sorted(samples)
