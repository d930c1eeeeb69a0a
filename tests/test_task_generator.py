from __future__ import annotations

import random
from datetime import datetime, timedelta

import pytest

from spark_tracker.db.round_store import TaskTarget
from spark_tracker.errors import CatalogExhausted
from spark_tracker.tracker.catalog import RetrievableDealsCatalog, StaticCatalog, is_valid_target
from spark_tracker.tracker.task_generator import TASKS_PER_ROUND, generate_tasks


class _RecordingTx:
    def __init__(self) -> None:
        self.inserted = []

    def insert_retrieval_tasks(self, round_id, targets) -> int:
        self.inserted.extend((round_id, t) for t in targets)
        return len(targets)


def test_tasks_per_round_constant() -> None:
    assert TASKS_PER_ROUND == 15


def test_generate_tasks_inserts_full_batch(catalog) -> None:
    tx = _RecordingTx()
    generate_tasks(tx, 9, catalog)
    assert len(tx.inserted) == TASKS_PER_ROUND
    assert all(round_id == 9 for round_id, _ in tx.inserted)
    assert all(t.miner_id.startswith("f0") for _, t in tx.inserted)


def test_generate_tasks_picks_independently() -> None:
    # 只有一个目标时，每个任务都选到它（有放回）
    only = TaskTarget(cid="bafyonly", miner_id="f01")
    tx = _RecordingTx()
    generate_tasks(tx, 1, StaticCatalog([only]))
    assert [t for _, t in tx.inserted] == [only] * TASKS_PER_ROUND


def test_generate_tasks_empty_catalog() -> None:
    tx = _RecordingTx()
    with pytest.raises(CatalogExhausted):
        generate_tasks(tx, 1, StaticCatalog([]))
    assert tx.inserted == []


def test_generate_tasks_rejects_invalid_miner_id() -> None:
    tx = _RecordingTx()
    bad = StaticCatalog([TaskTarget(cid="bafy", miner_id="t01234")])
    with pytest.raises(CatalogExhausted):
        generate_tasks(tx, 1, bad)
    assert tx.inserted == []


@pytest.mark.parametrize(
    "target, ok",
    [
        (TaskTarget(cid="bafy", miner_id="f01234"), True),
        (TaskTarget(cid="bafy", miner_id="f0"), False),
        (TaskTarget(cid="bafy", miner_id="f1abc"), False),
        (TaskTarget(cid="", miner_id="f01234"), False),
    ],
)
def test_is_valid_target(target, ok) -> None:
    assert is_valid_target(target) is ok


def test_retrievable_deals_catalog_filters_expired_and_invalid(store) -> None:
    now = datetime.now()
    store.deals = [
        (TaskTarget(cid="bafy-ok", miner_id="f0100"), now + timedelta(days=1)),
        (TaskTarget(cid="bafy-expired", miner_id="f0101"), now - timedelta(days=1)),
        (TaskTarget(cid="bafy-bad-miner", miner_id="f3xyz"), now + timedelta(days=1)),
    ]
    cat = RetrievableDealsCatalog(store, refresh_seconds=300, rng=random.Random(1))
    picks = {cat.pick_task_target().cid for _ in range(20)}
    assert picks == {"bafy-ok"}
    # 缓存期内只查一次库
    assert store.deal_queries == 1


def test_retrievable_deals_catalog_refreshes() -> None:
    class _Store:
        def __init__(self) -> None:
            self.calls = 0

        def list_retrievable_deals(self, now):
            self.calls += 1
            return [TaskTarget(cid=f"bafy{self.calls}", miner_id="f0100")]

    s = _Store()
    cat = RetrievableDealsCatalog(s, refresh_seconds=0)
    assert cat.pick_task_target().cid == "bafy1"
    assert cat.pick_task_target().cid == "bafy2"


def test_retrievable_deals_catalog_empty(store) -> None:
    cat = RetrievableDealsCatalog(store)
    with pytest.raises(CatalogExhausted):
        cat.pick_task_target()


def test_retrievable_deals_catalog_empty_result_is_not_cached(store) -> None:
    cat = RetrievableDealsCatalog(store, refresh_seconds=300, rng=random.Random(1))
    with pytest.raises(CatalogExhausted):
        cat.pick_task_target()

    # 订单入库后下一次挑选立即可用，不必等刷新周期
    store.deals = [(TaskTarget(cid="bafy-new", miner_id="f0100"), datetime.now() + timedelta(days=1))]
    assert cat.pick_task_target().cid == "bafy-new"
    assert cat.pick_task_target().cid == "bafy-new"
    assert store.deal_queries == 2
