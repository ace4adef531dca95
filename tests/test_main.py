"""
CLI 驱动测试：用极短的延时运行三操作示例，验证参数解析与退出码。
"""

from __future__ import annotations

import config
import main


def test_parse_args_defaults():
    args = main.parse_args([])
    assert args.delay == config.SAMPLE_DELAY_SECONDS
    assert args.max_concurrent == config.MAX_CONCURRENT_OPERATIONS
    assert args.cancel == []
    assert args.verbose is False


def test_parse_args_repeatable_cancel():
    args = main.parse_args(["--cancel", "op1", "--cancel", "op3", "-v", "--delay", "0.5"])
    assert args.cancel == ["op1", "op3"]
    assert args.delay == 0.5
    assert args.verbose is True


def test_run_three_operations():
    args = main.parse_args(["--delay", "0.01", "--timeout", "5"])
    assert main.run(args) == 0


def test_run_with_cancelled_dependency_and_cap():
    args = main.parse_args(["--delay", "0.01", "--timeout", "5", "--cancel", "op2", "--max-concurrent", "1"])
    assert main.run(args) == 0
