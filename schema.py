"""
Pydantic data models for the operation queue.
Defines the lifecycle states and the records passed to observers and the UI.
操作队列的 Pydantic 数据模型。
定义生命周期状态，以及传递给观察者和 UI 的数据记录。
"""

from __future__ import annotations

import time
from enum import Enum

from pydantic import BaseModel, Field


# ======================================================================
# Lifecycle
# 生命周期
# ======================================================================

class OperationState(str, Enum):
    """
    Operation lifecycle states, managed by OperationStateMachine.
    操作生命周期状态，由 OperationStateMachine 强制管理合法转移。

    Transition graph:
    转移图：
        READY -> EXECUTING -> FINISHED
        READY ------------->  FINISHED   (cancelled before start / 启动前已取消)
    """
    READY = "ready"           # 已创建，等待调度
    EXECUTING = "executing"   # 工作体已启动，尚未调用 finish()
    FINISHED = "finished"     # 终态：正常完成或被取消

    @property
    def rank(self) -> int:
        """Position in the ordering ready < executing < finished."""
        return _STATE_RANK[self]


_STATE_RANK = {
    OperationState.READY: 0,
    OperationState.EXECUTING: 1,
    OperationState.FINISHED: 2,
}


class ChangePhase(str, Enum):
    """
    Which side of a state mutation a notification describes.
    通知所处的阶段：状态变更之前或之后。
    """
    WILL_CHANGE = "will_change"
    DID_CHANGE = "did_change"


# ======================================================================
# Notifications & snapshots
# 通知与快照
# ======================================================================

class StateChange(BaseModel):
    """
    A single state-change notification delivered to observers.
    推送给观察者的一次状态变更通知。
    """
    operation_id: str                                       # 发生变更的操作 ID
    phase: ChangePhase                                      # will_change / did_change
    old_state: OperationState                               # 变更前状态
    new_state: OperationState                               # 目标状态
    timestamp: float = Field(default_factory=time.time)    # 通知时间戳


class OperationSnapshot(BaseModel):
    """
    Point-in-time, read-only view of an operation (for summaries and the CLI table).
    操作的某一时刻只读视图，用于队列摘要和 CLI 表格展示。
    """
    id: str
    name: str
    state: OperationState
    cancelled: bool = False
    dependency_ids: list[str] = Field(default_factory=list)  # 直接依赖的操作 ID
    error: str | None = None                                 # 工作体抛出的异常（如有）
