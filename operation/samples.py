"""
Sample work bodies - a delayed computation and an immediate one.
示例工作体 —— 一个延时计算和一个立即完成的计算。

Both hand their work off to another execution context and return at once,
so the worker thread that ran start() is released while the operation stays
EXECUTING until finish() is called from the other context.
两者都把工作移交给其他执行上下文后立即返回：
执行 start() 的工作线程被释放，而操作保持 EXECUTING，直到另一个上下文调用 finish()。
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import config
from operation.base import Operation, WorkFunction

logger = logging.getLogger(__name__)


def delayed_work(delay: float | None = None) -> WorkFunction:
    """
    Build a work function that finishes `delay` seconds later on a timer thread.
    构造一个工作函数：在定时器线程上延迟 `delay` 秒后完成。
    """
    seconds = config.SAMPLE_DELAY_SECONDS if delay is None else delay

    def work(op: Operation) -> None:
        if op.is_cancelled:
            op.finish()
            return

        def done() -> None:
            op.finish()
            logger.info("[Sample] %s finished after %.2fs", op.name, seconds)

        timer = threading.Timer(seconds, done)
        timer.daemon = True
        timer.start()

    return work


def immediate_work() -> WorkFunction:
    """
    Build a work function that finishes as soon as a dedicated executor runs it.
    构造一个工作函数：在专用单线程执行器上立即完成。

    Each call gets its own executor, so one work function can back several operations.
    每次调用创建独立的执行器，同一个工作函数可以被多个操作复用。
    """

    def work(op: Operation) -> None:
        if op.is_cancelled:
            op.finish()
            return

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"immediate-{op.id}")

        def done() -> None:
            op.finish()
            logger.info("[Sample] %s finished", op.name)
            executor.shutdown(wait=False)

        executor.submit(done)

    return work


def delayed_operation(name: str | None = None, delay: float | None = None, **kwargs) -> Operation:
    return Operation(delayed_work(delay), name=name, **kwargs)


def immediate_operation(name: str | None = None, **kwargs) -> Operation:
    return Operation(immediate_work(), name=name, **kwargs)
