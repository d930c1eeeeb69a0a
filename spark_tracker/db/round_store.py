"""
轮次持久化层。

RoundStore 对外提供两类能力：
- transaction()：开启一个事务，返回 RoundTx，供轮次映射在同一事务内完成
  “查重 -> 分配轮次号 -> 写轮次 -> 写任务”；
- 其余读写方法：每次调用使用独立事务，供 Web 层/运维工具使用。

PyMySQL 的异常在这里统一转换成 spark_tracker.errors 中的领域异常，
上层不直接依赖驱动的错误码。
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

import pymysql
from pymysql.constants import ER

from spark_tracker.db.mysql import MySqlPool
from spark_tracker.errors import (
    DuplicateRoundRace,
    InvalidRetrievalResult,
    RetrievalAlreadyCompleted,
    RetrievalNotFound,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

# 并发映射时可通过“回滚后重跑”恢复的错误码
_RACE_ERROR_CODES = (ER.DUP_ENTRY, ER.LOCK_DEADLOCK, ER.LOCK_WAIT_TIMEOUT)

# 形如 "Data too long for column 'protocol' at row 1"
_COLUMN_RE = re.compile(r"column '(\w+)'")


@dataclass(frozen=True)
class TaskTarget:
    """任务目录中的一个检索目标。"""

    cid: str
    miner_id: str


@dataclass(frozen=True)
class SparkRound:
    id: int
    meridian_address: str
    meridian_round: int
    created_at: datetime
    max_tasks_per_node: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "meridianAddress": self.meridian_address,
            "meridianRound": str(self.meridian_round),
            "createdAt": self.created_at.isoformat(),
            "maxTasksPerNode": self.max_tasks_per_node,
        }


@dataclass(frozen=True)
class ContractVersion:
    contract_address: str
    first_spark_round_number: int


@dataclass(frozen=True)
class RetrievalTask:
    id: int
    round_id: int
    cid: str
    miner_id: str
    provider_address: Optional[str] = None
    protocol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "roundId": str(self.round_id),
            "cid": self.cid,
            "minerId": self.miner_id,
            "providerAddress": self.provider_address,
            "protocol": self.protocol,
        }


def _error_code(exc: pymysql.err.MySQLError) -> Optional[int]:
    if exc.args and isinstance(exc.args[0], int):
        return exc.args[0]
    return None


def _row_to_round(row: Dict[str, Any]) -> SparkRound:
    # DECIMAL(65,0) 读出来是 Decimal，统一转成 int（任意精度）
    return SparkRound(
        id=int(row["id"]),
        meridian_address=row["meridian_address"],
        meridian_round=int(row["meridian_round"]),
        created_at=row["created_at"],
        max_tasks_per_node=int(row["max_tasks_per_node"]),
    )


def _row_to_task(row: Dict[str, Any]) -> RetrievalTask:
    return RetrievalTask(
        id=int(row["id"]),
        round_id=int(row["round_id"]),
        cid=row["cid"],
        miner_id=row["miner_id"],
        provider_address=row["provider_address"],
        protocol=row["protocol"],
    )


class RoundTx:
    """映射事务内可用的操作（同一个游标，同一个事务）。"""

    def __init__(self, cursor: Any) -> None:
        self._cur = cursor

    def find_spark_round_id(self, meridian_address: str, meridian_round: int) -> Optional[int]:
        self._cur.execute(
            "SELECT id FROM spark_rounds WHERE meridian_address = %s AND meridian_round = %s",
            (meridian_address, meridian_round),
        )
        row = self._cur.fetchone()
        return int(row["id"]) if row else None

    def max_spark_round_id(self) -> int:
        """当前最大轮次号；空表返回 0。"""
        self._cur.execute("SELECT COALESCE(MAX(id), 0) AS max_id FROM spark_rounds")
        row = self._cur.fetchone()
        return int(row["max_id"])

    def get_contract_version(self, contract_address: str) -> Optional[ContractVersion]:
        self._cur.execute(
            "SELECT contract_address, first_spark_round_number "
            "FROM meridian_contract_versions WHERE contract_address = %s",
            (contract_address,),
        )
        row = self._cur.fetchone()
        if row is None:
            return None
        return ContractVersion(
            contract_address=row["contract_address"],
            first_spark_round_number=int(row["first_spark_round_number"]),
        )

    def insert_contract_version(self, contract_address: str, first_spark_round_number: int) -> None:
        self._cur.execute(
            "INSERT INTO meridian_contract_versions (contract_address, first_spark_round_number) "
            "VALUES (%s, %s)",
            (contract_address, first_spark_round_number),
        )

    def insert_spark_round(self, spark_round: SparkRound) -> None:
        self._cur.execute(
            "INSERT INTO spark_rounds "
            "(id, meridian_address, meridian_round, created_at, max_tasks_per_node) "
            "VALUES (%s, %s, %s, %s, %s)",
            (
                spark_round.id,
                spark_round.meridian_address,
                spark_round.meridian_round,
                spark_round.created_at,
                spark_round.max_tasks_per_node,
            ),
        )

    def insert_retrieval_tasks(self, round_id: int, targets: Sequence[TaskTarget]) -> int:
        """批量写入任务（provider_address/protocol 留空），返回写入行数。"""
        if not targets:
            return 0
        params = [(round_id, t.cid, t.miner_id) for t in targets]
        affected = self._cur.executemany(
            "INSERT INTO retrieval_tasks (round_id, cid, miner_id) VALUES (%s, %s, %s)",
            params,
        )
        return int(affected or 0)


class RoundStore:
    """轮次数据访问层。"""

    def __init__(self, db_pool: MySqlPool) -> None:
        self._db = db_pool

    @contextmanager
    def transaction(self) -> Iterator[RoundTx]:
        """
        开启映射事务。

        异常转换：
        - 主键/唯一键冲突、死锁、锁等待超时 -> DuplicateRoundRace（调用方回滚后重跑）
        - 其余 MySQL 错误 -> StoreUnavailable
        """
        try:
            with self._db.connection() as conn:
                with conn.cursor() as cur:
                    yield RoundTx(cur)
        except pymysql.err.MySQLError as e:
            code = _error_code(e)
            if code in _RACE_ERROR_CODES:
                raise DuplicateRoundRace(f"映射事务冲突：code={code} err={e}") from e
            raise StoreUnavailable(f"MySQL 事务失败：code={code} err={e}") from e

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        try:
            with self._db.connection() as conn:
                with conn.cursor() as cur:
                    yield cur
        except pymysql.err.MySQLError as e:
            raise StoreUnavailable(f"MySQL 查询失败：code={_error_code(e)} err={e}") from e

    def get_spark_round(self, round_id: int) -> Optional[SparkRound]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM spark_rounds WHERE id = %s", (round_id,))
            row = cur.fetchone()
            return _row_to_round(row) if row else None

    def latest_spark_round(self) -> Optional[SparkRound]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM spark_rounds ORDER BY id DESC LIMIT 1")
            row = cur.fetchone()
            return _row_to_round(row) if row else None

    def list_retrieval_tasks(self, round_id: int) -> List[RetrievalTask]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM retrieval_tasks WHERE round_id = %s ORDER BY id", (round_id,))
            return [_row_to_task(r) for r in cur.fetchall()]

    def get_first_spark_round_number(self, contract_address: str) -> Optional[int]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT first_spark_round_number FROM meridian_contract_versions "
                "WHERE contract_address = %s",
                (contract_address,),
            )
            row = cur.fetchone()
            return int(row["first_spark_round_number"]) if row else None

    def pick_random_task(self, round_id: int) -> Optional[RetrievalTask]:
        """从指定轮次中随机挑一个任务分配给节点。"""
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM retrieval_tasks WHERE round_id = %s ORDER BY RAND() LIMIT 1",
                (round_id,),
            )
            row = cur.fetchone()
            return _row_to_task(row) if row else None

    def list_retrievable_deals(self, now: datetime) -> List[TaskTarget]:
        """未过期的可检索订单（任务目录数据源）。"""
        with self._cursor() as cur:
            cur.execute(
                "SELECT cid, miner_id FROM retrievable_deals WHERE expires_at > %s",
                (now,),
            )
            return [TaskTarget(cid=r["cid"], miner_id=r["miner_id"]) for r in cur.fetchall()]

    def save_retrieval_result(
        self,
        task_id: int,
        wallet_address: str,
        success: bool,
        provider_address: Optional[str] = None,
        protocol: Optional[str] = None,
    ) -> None:
        """
        保存检索结果，并回填任务的 provider_address/protocol。

        Raises:
            RetrievalNotFound: 任务不存在
            RetrievalAlreadyCompleted: 结果已上报过
            InvalidRetrievalResult: 字段值不符合列定义（超长等）
        """
        try:
            with self._db.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "INSERT INTO retrieval_results (retrieval_task_id, wallet_address, success) "
                        "VALUES (%s, %s, %s)",
                        (task_id, wallet_address, bool(success)),
                    )
                    if provider_address is not None or protocol is not None:
                        cur.execute(
                            "UPDATE retrieval_tasks SET "
                            "provider_address = COALESCE(%s, provider_address), "
                            "protocol = COALESCE(%s, protocol) "
                            "WHERE id = %s",
                            (provider_address, protocol, task_id),
                        )
        except pymysql.err.IntegrityError as e:
            code = _error_code(e)
            if code in (ER.NO_REFERENCED_ROW_2, ER.NO_REFERENCED_ROW):
                raise RetrievalNotFound(f"检索任务不存在：task_id={task_id}") from e
            if code == ER.DUP_ENTRY:
                raise RetrievalAlreadyCompleted(f"检索结果已上报：task_id={task_id}") from e
            raise StoreUnavailable(f"保存检索结果失败：task_id={task_id} err={e}") from e
        except pymysql.err.DataError as e:
            m = _COLUMN_RE.search(str(e))
            column = m.group(1) if m else None
            raise InvalidRetrievalResult(
                f"检索结果字段无效：task_id={task_id} column={column} err={e}", column=column
            ) from e
        except pymysql.err.MySQLError as e:
            raise StoreUnavailable(f"保存检索结果失败：task_id={task_id} err={e}") from e
