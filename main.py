"""
Operation Queue Demo - CLI entry point.
操作队列 Demo —— 命令行入口。

Wires three operations into one dependency pattern and submits them:
构造三个操作并组成一个依赖关系后提交：

    op1 (delayed)   ──┐
                      ├──> op3 (delayed)
    op2 (immediate) ──┘

The batch is submitted out of order ([op2, op3, op1]); the queue still starts
op3 only after op1 and op2 finished. A rich console UI shows every event.
批次以乱序 [op2, op3, op1] 提交；队列仍保证 op3 在 op1、op2 完成后才启动。
Rich 控制台 UI 实时展示每个事件。

Usage / 用法:
    python main.py                       # 正常运行
    python main.py --cancel op2          # 提交前取消 op2，op3 将短路完成
    python main.py --delay 1 --max-concurrent 1 -v
"""

from __future__ import annotations

import argparse
import logging
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

import config
from operation import OperationQueue
from operation.samples import delayed_operation, immediate_operation
from schema import OperationSnapshot

console = Console()

# State -> Rich style mapping
# 操作状态 -> Rich 样式映射
_STATE_STYLES = {
    "ready": "yellow",
    "executing": "bold yellow",
    "finished": "green",
}


# ======================================================================
# UI Event Handler
# UI 事件处理器 —— 美化打印队列事件
# ======================================================================

def on_event(event: str, data: Any) -> None:
    """
    Handle events from the OperationQueue and display them.
    处理来自 OperationQueue 的事件并在控制台展示。
    事件可能来自任意工作线程或定时器线程，Rich Console 的输出是线程安全的。
    """
    if event == "operation_added":
        op = data["operation"]
        deps = ", ".join(d.name for d in op.dependencies) or "-"
        console.print(f"  [dim]+ queued[/dim] [cyan]{op.name}[/cyan] [dim](depends on: {deps})[/dim]")

    elif event == "operation_dispatched":
        console.print(f"  [bold yellow]> start[/bold yellow] [cyan]{data['operation'].name}[/cyan]")

    elif event == "operation_finished":
        op = data["operation"]
        if op.is_cancelled:
            console.print(f"  [magenta]x cancelled[/magenta] [cyan]{op.name}[/cyan]")
        else:
            console.print(f"  [green]✓ finished[/green] [cyan]{op.name}[/cyan]")

    elif event == "operation_failed":
        console.print(f"  [red]! failed[/red] [cyan]{data['operation'].name}[/cyan]: {data['error']}")

    elif event == "queue_idle":
        console.print(f"  [dim]queue '{data['queue']}' is idle[/dim]")


def _build_result_table(snapshots: list[OperationSnapshot]) -> Table:
    """
    Build a Rich Table with the final state of every operation.
    构建展示每个操作最终状态的 Rich 表格。
    """
    table = Table(title="Operations", show_lines=False)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("State")
    table.add_column("Cancelled")
    table.add_column("Depends on", style="dim")
    for snap in snapshots:
        style = _STATE_STYLES.get(snap.state.value, "white")
        table.add_row(
            snap.id,
            snap.name,
            f"[{style}]{snap.state.value}[/{style}]",
            "yes" if snap.cancelled else "no",
            ", ".join(snap.dependency_ids) or "-",
        )
    return table


# ======================================================================
# Main
# 主函数
# ======================================================================

def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging with rich handler.
    使用 Rich 处理器配置日志系统。
    verbose=True 时启用 DEBUG 级别，显示状态机的每次转移。
    """
    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run three dependent operations on an OperationQueue.")
    parser.add_argument("--delay", type=float, default=config.SAMPLE_DELAY_SECONDS,
                        help="seconds the delayed operations wait before finishing")
    parser.add_argument("--max-concurrent", type=int, default=config.MAX_CONCURRENT_OPERATIONS,
                        help="cap on in-flight operations (0 = unlimited)")
    parser.add_argument("--cancel", choices=["op1", "op2", "op3"], action="append", default=[],
                        help="cancel an operation before submission (repeatable)")
    parser.add_argument("--timeout", type=float, default=config.WAIT_TIMEOUT_SECONDS,
                        help="seconds to wait for the queue to drain")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> int:
    """
    Build, wire and submit the three sample operations; return the exit code.
    构造、连接并提交三个示例操作；返回进程退出码。
    """
    # 声明操作
    ops = {
        "op1": delayed_operation(name="op1", op_id="op1", delay=args.delay),
        "op2": immediate_operation(name="op2", op_id="op2"),
        "op3": delayed_operation(name="op3", op_id="op3", delay=args.delay),
    }
    # op3 只有在 op1 和 op2 都完成后才执行
    ops["op3"].add_dependency(ops["op2"])
    ops["op3"].add_dependency(ops["op1"])

    for name in args.cancel:
        ops[name].cancel()

    console.print(Panel(
        f"Submitting [cyan]op2, op3, op1[/cyan] (op3 depends on op1 and op2)\n"
        f"delay={args.delay}s  max_concurrent={args.max_concurrent or 'unlimited'}  "
        f"cancelled={', '.join(args.cancel) or 'none'}",
        title="[bold blue]Operation Queue[/bold blue]",
        border_style="blue",
    ))

    with OperationQueue(max_concurrent=args.max_concurrent, name="main", on_event=on_event) as queue:
        queue.add_operations([ops["op2"], ops["op3"], ops["op1"]], wait_until_finished=False)
        drained = queue.wait_until_all_operations_finished(timeout=args.timeout)
        if not drained:
            console.print(f"[red]Timed out after {args.timeout}s: {queue.summary()}[/red]")
            queue.cancel_all_operations()

    console.print(_build_result_table([op.snapshot() for op in ops.values()]))
    return 0 if drained else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
