"""
Configuration module for the operation queue demo.
Loads settings from environment variables or .env file.
操作队列 Demo 配置模块。
从环境变量或 .env 文件加载所有配置项。
"""

import os
from dotenv import load_dotenv

load_dotenv()  # 自动读取项目根目录的 .env 文件（若存在），优先级低于系统环境变量

# --- Queue Scheduling ---
# --- 队列调度参数 ---
# 0 means unlimited. Counts operations that were dispatched and have not finished yet,
# including bodies that handed their work off to a timer or another executor.
# 0 表示不限制。统计已派发但尚未 Finished 的操作（包括已把工作移交给定时器的操作）。
MAX_CONCURRENT_OPERATIONS = int(os.getenv("MAX_CONCURRENT_OPERATIONS", "0"))
WORKER_THREADS = int(os.getenv("WORKER_THREADS", "8"))  # 执行 start() 的线程池大小

# --- Samples / CLI ---
# --- 示例与命令行 ---
SAMPLE_DELAY_SECONDS = float(os.getenv("SAMPLE_DELAY_SECONDS", "5"))    # 延时示例操作的等待秒数
WAIT_TIMEOUT_SECONDS = float(os.getenv("WAIT_TIMEOUT_SECONDS", "60"))   # CLI 等待队列清空的超时时间（秒）
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()                      # 未指定 -v 时的日志级别
