"""
程序入口：常驻服务（轮次追踪线程 + 可选 Flask）。

运行：
    python -m spark_tracker.main
"""

from __future__ import annotations

import logging
import signal
import sys
import threading

from spark_tracker.chain.meridian_client import MeridianClient
from spark_tracker.config import settings
from spark_tracker.db.mysql import MySqlPool, init_schema
from spark_tracker.db.round_store import RoundStore
from spark_tracker.logging_config import setup_logging
from spark_tracker.tracker.round_poller import start_round_tracker

logger = logging.getLogger(__name__)


def _build_pool() -> MySqlPool:
    return MySqlPool(
        host=settings.mysql_host,
        port=settings.mysql_port,
        user=settings.mysql_user,
        password=settings.mysql_password,
        database=settings.mysql_database,
        pool_size=settings.mysql_pool_size,
    )


def _start_flask(store: RoundStore, handle) -> None:
    from spark_tracker.web.app import create_flask_app, run_flask_in_thread

    app = create_flask_app(store, handle)
    thread = threading.Thread(
        target=run_flask_in_thread,
        args=(app, settings.flask_host, settings.flask_port, bool(settings.flask_debug)),
        daemon=True,
        name="FlaskServer",
    )
    thread.start()
    logger.info("Flask 已启动：http://%s:%s", settings.flask_host, settings.flask_port)


def main() -> int:
    setup_logging(settings.log_level)
    logger.info("服务启动：Spark 轮次追踪")

    pool = _build_pool()
    # 表结构初始化失败直接退出：没有表结构映射无法工作
    init_schema(pool)
    store = RoundStore(pool)

    stop_event = threading.Event()

    chain = MeridianClient(
        rpc_url=settings.rpc_url,
        contract_address=settings.contract_address(),
        timeout_seconds=settings.rpc_timeout_seconds,
        retry_times=settings.rpc_retry_times,
        lookback_blocks=settings.round_start_lookback_blocks,
        max_retry_delay_seconds=settings.backoff_max_seconds,
        stop_event=stop_event,
    )

    def _handle_signal(signum, _frame) -> None:
        logger.info("收到退出信号：%s，准备退出", signum)
        stop_event.set()

    # Linux 常用信号
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    handle = start_round_tracker(store, chain, stop_event, settings=settings)

    if settings.flask_enabled:
        _start_flask(store, handle)

    try:
        # 主线程等待追踪线程结束（收到信号，或按策略退出）
        while handle.is_alive():
            handle.join(timeout=1)
    finally:
        stop_event.set()
        chain.close()
        pool.close()
        logger.info("服务已退出")

    return 1 if handle.failed else 0


if __name__ == "__main__":
    sys.exit(main())
