"""
任务目录：为每个检索任务挑选 (cid, miner_id)。

挑选策略：在“可用目标”中独立、均匀随机地挑选（有放回）。
"""

from __future__ import annotations

import logging
import random
import re
import threading
import time
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from spark_tracker.db.round_store import RoundStore, TaskTarget
from spark_tracker.errors import CatalogExhausted

logger = logging.getLogger(__name__)

# Filecoin actor id：f0 + 数字
MINER_ID_RE = re.compile(r"^f0\d+$")


def is_valid_target(target: TaskTarget) -> bool:
    return bool(target.cid) and bool(MINER_ID_RE.match(target.miner_id or ""))


class ContentCatalog(Protocol):
    """任务目录端口。"""

    def pick_task_target(self) -> TaskTarget:
        """返回一个检索目标；目录为空时抛 CatalogExhausted。"""


class StaticCatalog:
    """固定列表目录（用于补录工具与测试）。"""

    def __init__(self, targets: Sequence[TaskTarget], rng: Optional[random.Random] = None) -> None:
        self._targets: List[TaskTarget] = list(targets)
        self._rng = rng or random.Random()

    def pick_task_target(self) -> TaskTarget:
        if not self._targets:
            raise CatalogExhausted("任务目录为空")
        return self._rng.choice(self._targets)


class RetrievableDealsCatalog:
    """
    基于 retrievable_deals 表的目录。

    可用目标集合按 refresh_seconds 缓存，避免每挑一个任务查一次库。
    miner_id 格式不合法的订单直接过滤掉。
    """

    def __init__(
        self,
        store: RoundStore,
        refresh_seconds: int = 300,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._refresh_seconds = max(refresh_seconds, 0)
        self._rng = rng or random.Random()
        self._targets: List[TaskTarget] = []
        self._loaded_at: Optional[float] = None
        self._lock = threading.Lock()

    def _refresh_if_needed(self) -> List[TaskTarget]:
        with self._lock:
            now = time.monotonic()
            if self._loaded_at is not None and now - self._loaded_at < self._refresh_seconds:
                return self._targets

            deals = self._store.list_retrievable_deals(datetime.now())
            valid = [d for d in deals if is_valid_target(d)]
            if len(valid) != len(deals):
                logger.warning("过滤掉格式不合法的订单：invalid=%s total=%s", len(deals) - len(valid), len(deals))
            self._targets = valid
            # 空目录不缓存，下一次挑选时重新查询
            self._loaded_at = now if valid else None
            logger.info("任务目录已刷新：targets=%s", len(valid))
            return self._targets

    def pick_task_target(self) -> TaskTarget:
        targets = self._refresh_if_needed()
        if not targets:
            raise CatalogExhausted("没有可检索的订单（retrievable_deals 为空或均已过期）")
        return self._rng.choice(targets)
