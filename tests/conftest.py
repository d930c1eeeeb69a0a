from __future__ import annotations

import random
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pytest

from spark_tracker.config import Settings
from spark_tracker.db.round_store import ContractVersion, RetrievalTask, SparkRound, TaskTarget
from spark_tracker.errors import (
    DuplicateRoundRace,
    RetrievalAlreadyCompleted,
    RetrievalNotFound,
    StoreUnavailable,
)
from spark_tracker.tracker.catalog import StaticCatalog


class MemoryTx:
    """
    内存事务：开始时拍快照，写入先记在本地，提交时再检查主键/唯一键。

    与 InnoDB 的差异：冲突在提交时才暴露，而不是在 INSERT 时；
    对映射逻辑而言两者等价（都会让整个事务回滚）。
    """

    def __init__(self, store: "MemoryRoundStore") -> None:
        self._store = store
        with store.lock:
            self.rounds: Dict[int, SparkRound] = dict(store.rounds)
            self.versions: Dict[str, int] = dict(store.versions)
        self.new_rounds: List[SparkRound] = []
        self.new_versions: List[Tuple[str, int]] = []
        self.new_tasks: List[Tuple[int, TaskTarget]] = []

    def find_spark_round_id(self, meridian_address: str, meridian_round: int) -> Optional[int]:
        if self._store.find_hook is not None:
            self._store.find_hook()
        for r in list(self.rounds.values()) + self.new_rounds:
            if r.meridian_address == meridian_address and r.meridian_round == meridian_round:
                return r.id
        return None

    def max_spark_round_id(self) -> int:
        ids = [r.id for r in self.rounds.values()] + [r.id for r in self.new_rounds]
        return max(ids, default=0)

    def get_contract_version(self, contract_address: str) -> Optional[ContractVersion]:
        for addr, first in list(self.versions.items()) + self.new_versions:
            if addr == contract_address:
                return ContractVersion(contract_address=addr, first_spark_round_number=first)
        return None

    def insert_contract_version(self, contract_address: str, first_spark_round_number: int) -> None:
        if self.get_contract_version(contract_address) is not None:
            raise DuplicateRoundRace(f"duplicate contract version {contract_address}")
        self.new_versions.append((contract_address, first_spark_round_number))

    def insert_spark_round(self, spark_round: SparkRound) -> None:
        if spark_round.id in self.rounds or any(r.id == spark_round.id for r in self.new_rounds):
            raise DuplicateRoundRace(f"duplicate spark round id {spark_round.id}")
        self.new_rounds.append(spark_round)

    def insert_retrieval_tasks(self, round_id: int, targets: Sequence[TaskTarget]) -> int:
        self.new_tasks.extend((round_id, t) for t in targets)
        return len(targets)

    def commit(self) -> None:
        s = self._store
        with s.lock:
            pairs = {(r.meridian_address, r.meridian_round) for r in s.rounds.values()}
            for r in self.new_rounds:
                if r.id in s.rounds or (r.meridian_address, r.meridian_round) in pairs:
                    raise DuplicateRoundRace(f"commit conflict on spark round {r.id}")
            for addr, _ in self.new_versions:
                if addr in s.versions:
                    raise DuplicateRoundRace(f"commit conflict on contract version {addr}")
            for r in self.new_rounds:
                s.rounds[r.id] = r
            for addr, first in self.new_versions:
                s.versions[addr] = first
            for round_id, t in self.new_tasks:
                s.next_task_id += 1
                s.tasks.append(RetrievalTask(id=s.next_task_id, round_id=round_id, cid=t.cid, miner_id=t.miner_id))


class MemoryRoundStore:
    """RoundStore 的内存替身。"""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.rounds: Dict[int, SparkRound] = {}
        self.versions: Dict[str, int] = {}
        self.tasks: List[RetrievalTask] = []
        self.results: Dict[int, dict] = {}
        self.deals: List[Tuple[TaskTarget, datetime]] = []
        self.next_task_id = 0
        self.find_hook: Optional[Callable[[], None]] = None
        self.fail_transactions = 0
        self.transactions = 0
        self.deal_queries = 0

    @contextmanager
    def transaction(self) -> Iterator[MemoryTx]:
        with self.lock:
            self.transactions += 1
            if self.fail_transactions > 0:
                self.fail_transactions -= 1
                raise StoreUnavailable("simulated outage")
        tx = MemoryTx(self)
        yield tx
        tx.commit()

    def get_spark_round(self, round_id: int) -> Optional[SparkRound]:
        return self.rounds.get(round_id)

    def latest_spark_round(self) -> Optional[SparkRound]:
        if not self.rounds:
            return None
        return self.rounds[max(self.rounds)]

    def list_retrieval_tasks(self, round_id: int) -> List[RetrievalTask]:
        return [t for t in self.tasks if t.round_id == round_id]

    def get_first_spark_round_number(self, contract_address: str) -> Optional[int]:
        return self.versions.get(contract_address)

    def pick_random_task(self, round_id: int) -> Optional[RetrievalTask]:
        tasks = self.list_retrieval_tasks(round_id)
        return random.choice(tasks) if tasks else None

    def list_retrievable_deals(self, now: datetime) -> List[TaskTarget]:
        self.deal_queries += 1
        return [t for t, expires_at in self.deals if expires_at > now]

    def save_retrieval_result(
        self,
        task_id: int,
        wallet_address: str,
        success: bool,
        provider_address: Optional[str] = None,
        protocol: Optional[str] = None,
    ) -> None:
        idx = next((i for i, t in enumerate(self.tasks) if t.id == task_id), None)
        if idx is None:
            raise RetrievalNotFound(str(task_id))
        if task_id in self.results:
            raise RetrievalAlreadyCompleted(str(task_id))
        self.results[task_id] = {"wallet_address": wallet_address, "success": success}
        t = self.tasks[idx]
        self.tasks[idx] = RetrievalTask(
            id=t.id,
            round_id=t.round_id,
            cid=t.cid,
            miner_id=t.miner_id,
            provider_address=provider_address if provider_address is not None else t.provider_address,
            protocol=protocol if protocol is not None else t.protocol,
        )


def make_targets(n: int = 20) -> List[TaskTarget]:
    return [TaskTarget(cid=f"bafy{i:04d}", miner_id=f"f0{1000 + i}") for i in range(n)]


@pytest.fixture
def store() -> MemoryRoundStore:
    return MemoryRoundStore()


@pytest.fixture
def catalog() -> StaticCatalog:
    return StaticCatalog(make_targets(), rng=random.Random(42))


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(
        POLL_INTERVAL_SECONDS=0.01,
        BACKOFF_BASE_SECONDS=0.01,
        BACKOFF_MAX_SECONDS=0.02,
        STORE_FAILURE_POLICY="retry",
        STORE_MAX_CONSECUTIVE_FAILURES=3,
        MAPPER_MAX_ATTEMPTS=5,
        MAX_TASKS_PER_NODE=15,
    )
