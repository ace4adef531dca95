"""
Exception hierarchy for operations and the scheduling queue.
操作与调度队列的异常层级。

Cancellation is deliberately absent: a cancelled operation is a normal
termination path that always resolves to FINISHED.
取消不属于异常：被取消的操作正常终止并进入 FINISHED。
"""

from __future__ import annotations


class OperationError(Exception):
    """Base class for every error raised by this package."""
    pass


class InvalidTransitionError(OperationError, AssertionError):
    """
    Raised when an illegal state transition is attempted.
    当尝试非法状态转移时抛出此异常。

    This is an internal contract violation (a bug at a call site of the state
    machine), never a condition caused by user input.
    这是内部契约违背（状态机调用方的 bug），而非用户输入导致的运行时错误。
    """
    pass


class DependencyError(OperationError):
    """
    Raised when a dependency edge cannot be added or removed.
    依赖边无法添加/移除时抛出（例如操作已不处于 READY 状态）。
    """
    pass


class DependencyCycleError(DependencyError):
    """Raised by the queue when a submitted batch contains a dependency cycle."""

    def __init__(self, operation_ids: list[str]):
        self.operation_ids = operation_ids
        super().__init__(f"Dependency cycle among operations: {', '.join(operation_ids)}")


class QueueError(OperationError):
    """Raised for invalid queue usage (duplicate submission, submit after shutdown)."""
    pass
