"""
任务批生成：新轮次创建时，在同一事务内写入固定数量的检索任务。
"""

from __future__ import annotations

import logging
from typing import List

from spark_tracker.db.round_store import RoundTx, TaskTarget
from spark_tracker.errors import CatalogExhausted, StoreUnavailable
from spark_tracker.tracker.catalog import ContentCatalog, is_valid_target

logger = logging.getLogger(__name__)

TASKS_PER_ROUND = 15


def generate_tasks(
    tx: RoundTx,
    spark_round_id: int,
    catalog: ContentCatalog,
    count: int = TASKS_PER_ROUND,
) -> None:
    """
    为 spark_round_id 生成 count 个检索任务。

    只允许在映射事务内调用：任何异常都会让整个轮次创建回滚，
    外部永远看不到“任务不完整”的轮次。
    """
    targets: List[TaskTarget] = []
    for _ in range(count):
        target = catalog.pick_task_target()
        if not is_valid_target(target):
            raise CatalogExhausted(
                f"任务目录返回了不合法的目标：cid={target.cid!r} miner_id={target.miner_id!r}"
            )
        targets.append(target)

    inserted = tx.insert_retrieval_tasks(spark_round_id, targets)
    if inserted != count:
        raise StoreUnavailable(f"任务写入数量不符：expected={count} inserted={inserted}")

    logger.info("轮次任务已生成：spark_round=%s tasks=%s", spark_round_id, count)
