"""
日志配置。

轮次追踪、Flask 服务、数据库访问分别跑在不同线程（RoundTracker / FlaskServer / 请求线程），
所以格式里带上线程名；业务字段（contract/round/spark_round）在具体日志里以 key=value 补充。
输出到 stdout，交给容器/系统日志采集。
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# 第三方库最低 WARNING：请求日志、连接池/驱动细节不进业务日志
NOISY_LOGGERS = ("httpx", "httpcore", "werkzeug", "pymysql")


def setup_logging(level: str = "INFO") -> int:
    """初始化全局日志配置，返回生效的日志级别。"""
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger().setLevel(numeric_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    if numeric_level != getattr(logging, str(level).upper(), None):
        logging.getLogger(__name__).warning("未知日志级别，使用 INFO：level=%s", level)
    return numeric_level
