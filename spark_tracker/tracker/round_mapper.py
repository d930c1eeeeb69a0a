"""
轮次映射：把链上观测到的 (合约地址, 轮次索引) 映射为全局递增的 Spark 轮次号。

并发策略（约束驱动，不加应用层锁）：
- spark_rounds.id 为主键，(meridian_address, meridian_round) 唯一，
  meridian_contract_versions.contract_address 为主键；
- 两个映射同时算出同一个 max(id)+1 时，只有一个能提交，另一个在写入时撞上
  主键/唯一键冲突（或 InnoDB 死锁），整个事务回滚；
- 失败方开新事务重跑：若胜者写的是同一个链上轮次，第一步查重即返回胜者的
  轮次号；若胜者写的是别的轮次，则基于新的 max(id) 继续分配。
因此同一个轮次号不可能被分配两次，同一个链上轮次也不可能被写入两次。
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from spark_tracker.db.round_store import RoundStore, SparkRound
from spark_tracker.errors import DuplicateRoundRace, StoreUnavailable
from spark_tracker.tracker.catalog import ContentCatalog
from spark_tracker.tracker.task_generator import TASKS_PER_ROUND, generate_tasks

logger = logging.getLogger(__name__)

DEFAULT_MAX_TASKS_PER_NODE = 15
DEFAULT_MAX_ATTEMPTS = 5


def normalize_contract_address(contract_address: str) -> str:
    address = (contract_address or "").strip().lower()
    if not address:
        raise ValueError("合约地址不能为空")
    return address


def _map_round_once(
    store: RoundStore,
    contract_address: str,
    round_index: int,
    round_start_epoch: Optional[int],
    catalog: ContentCatalog,
    max_tasks_per_node: int,
    now: Callable[[], datetime],
) -> int:
    with store.transaction() as tx:
        existing = tx.find_spark_round_id(contract_address, round_index)
        if existing is not None:
            logger.debug(
                "链上轮次已映射过：contract=%s round=%s spark_round=%s",
                contract_address,
                round_index,
                existing,
            )
            return existing

        spark_round_id = tx.max_spark_round_id() + 1

        if tx.get_contract_version(contract_address) is None:
            # 首次见到该地址：新部署的合约接着已有的轮次号继续编号
            logger.info(
                "发现新的合约版本：contract=%s first_spark_round=%s",
                contract_address,
                spark_round_id,
            )
            tx.insert_contract_version(contract_address, spark_round_id)

        tx.insert_spark_round(
            SparkRound(
                id=spark_round_id,
                meridian_address=contract_address,
                meridian_round=round_index,
                created_at=now(),
                max_tasks_per_node=max_tasks_per_node,
            )
        )
        generate_tasks(tx, spark_round_id, catalog, TASKS_PER_ROUND)

    logger.info(
        "新 Spark 轮次已创建：spark_round=%s contract=%s round=%s start_epoch=%s",
        spark_round_id,
        contract_address,
        round_index,
        round_start_epoch,
    )
    return spark_round_id


def map_round(
    store: RoundStore,
    contract_address: str,
    round_index: int,
    round_start_epoch: Optional[int],
    catalog: ContentCatalog,
    max_tasks_per_node: int = DEFAULT_MAX_TASKS_PER_NODE,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    now: Callable[[], datetime] = datetime.now,
) -> int:
    """
    幂等地把链上轮次映射为 Spark 轮次号。

    Args:
        store: 轮次存储
        contract_address: Meridian 合约地址
        round_index: 合约上报的轮次索引（非负整数，任意精度）
        round_start_epoch: 该轮次开始的区块高度（仅用于日志）
        catalog: 任务目录
        max_tasks_per_node: 写入新轮次的单节点任务上限
        max_attempts: 并发冲突时最多尝试的次数

    Returns:
        Spark 轮次号；同一 (contract_address, round_index) 永远返回同一个值。

    Raises:
        CatalogExhausted: 无法生成完整的任务批（整个轮次回滚）
        StoreUnavailable: 数据库不可用，或冲突重试次数耗尽
    """
    if isinstance(round_index, bool) or not isinstance(round_index, int) or round_index < 0:
        raise ValueError(f"round_index 必须是非负整数：{round_index!r}")
    address = normalize_contract_address(contract_address)

    last_race: Optional[DuplicateRoundRace] = None
    for attempt in range(1, max(max_attempts, 1) + 1):
        try:
            return _map_round_once(
                store,
                address,
                round_index,
                round_start_epoch,
                catalog,
                max_tasks_per_node,
                now,
            )
        except DuplicateRoundRace as e:
            last_race = e
            logger.info(
                "映射并发冲突，回滚后重试：contract=%s round=%s attempt=%s/%s err=%s",
                address,
                round_index,
                attempt,
                max_attempts,
                e,
            )

    raise StoreUnavailable(
        f"映射冲突重试次数耗尽：contract={address} round={round_index} attempts={max_attempts}"
    ) from last_race
