"""
运维工具：手动把一个链上轮次映射为 Spark 轮次（补录/排查用）。

运行：
    python -m spark_tracker.map_round --contract 0x... --round 120 [--epoch 321]

未指定 --epoch 时从链上查询 RoundStart 事件。映射是幂等的，重复执行返回同一个轮次号。
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from spark_tracker.chain.meridian_client import MeridianClient
from spark_tracker.config import settings
from spark_tracker.db.mysql import MySqlPool
from spark_tracker.db.round_store import RoundStore
from spark_tracker.errors import TrackerError
from spark_tracker.logging_config import setup_logging
from spark_tracker.tracker.catalog import RetrievableDealsCatalog
from spark_tracker.tracker.round_mapper import map_round

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="把 Meridian 链上轮次映射为 Spark 轮次")
    parser.add_argument("--contract", default=None, help="合约地址（默认取 MERIDIAN_CONTRACT_ADDRESS）")
    parser.add_argument("--round", dest="round_index", type=int, required=True, help="链上轮次索引")
    parser.add_argument("--epoch", type=int, default=None, help="轮次开始区块（默认从链上查询）")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(settings.log_level)

    contract = args.contract or settings.contract_address()
    epoch = args.epoch
    if epoch is None:
        chain = MeridianClient(
            rpc_url=settings.rpc_url,
            contract_address=contract,
            timeout_seconds=settings.rpc_timeout_seconds,
            retry_times=settings.rpc_retry_times,
            lookback_blocks=settings.round_start_lookback_blocks,
            max_retry_delay_seconds=settings.backoff_max_seconds,
        )
        try:
            epoch = chain.round_start_epoch(args.round_index)
        except TrackerError as e:
            logger.error("查询轮次开始区块失败：%s", e)
            return 1
        finally:
            chain.close()

    pool = MySqlPool(
        host=settings.mysql_host,
        port=settings.mysql_port,
        user=settings.mysql_user,
        password=settings.mysql_password,
        database=settings.mysql_database,
        pool_size=1,
    )
    store = RoundStore(pool)
    try:
        spark_round = map_round(
            store,
            contract,
            args.round_index,
            epoch,
            RetrievableDealsCatalog(store, refresh_seconds=settings.catalog_refresh_seconds),
            max_tasks_per_node=settings.max_tasks_per_node,
            max_attempts=settings.mapper_max_attempts,
        )
    except TrackerError as e:
        logger.error("映射失败：contract=%s round=%s err=%s", contract, args.round_index, e)
        return 1
    finally:
        pool.close()

    print(spark_round)
    return 0


if __name__ == "__main__":
    sys.exit(main())
