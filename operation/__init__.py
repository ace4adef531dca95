"""
Operation module - Cancellable, dependency-aware asynchronous operations.
Operation 模块 —— 可取消、感知依赖的异步操作。

Components:
  - state_machine.py: Thread-safe lifecycle state machine (READY/EXECUTING/FINISHED)
  - base.py:          Operation contract (start/main/finish/cancel/did_cancel)
  - queue.py:         OperationQueue (dependency-ordered dispatch on a thread pool)
  - samples.py:       Sample work bodies (delayed / immediate)
  - errors.py:        Exception hierarchy

模块组成：
  - state_machine.py: 线程安全的生命周期状态机
  - base.py:          操作契约（start/main/finish/cancel/did_cancel）
  - queue.py:         操作队列（在线程池上按依赖顺序派发）
  - samples.py:       示例工作体（延时 / 立即）
  - errors.py:        异常层级
"""

from operation.base import Operation                       # 异步操作
from operation.errors import (                             # 异常层级
    DependencyCycleError,
    DependencyError,
    InvalidTransitionError,
    OperationError,
    QueueError,
)
from operation.queue import OperationQueue                 # 调度队列
from operation.state_machine import OperationStateMachine  # 状态机
