"""
轮次轮询：常驻后台线程，定期读取链上当前轮次并交给轮次映射。

状态流转：POLLING -> MAPPING -> SLEEPING -> POLLING ...，只有停止信号能进入 STOPPED
（store_failure_policy=exit 时连续映射失败也会进入 STOPPED，并标记 failed）。

停止信号只在状态之间检查：正在执行的映射事务不会被打断；
休眠使用 stop_event.wait()，收到信号立即返回。
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Optional, Protocol

from spark_tracker.config import Settings
from spark_tracker.config import settings as default_settings
from spark_tracker.db.round_store import RoundStore
from spark_tracker.errors import TransientChainError
from spark_tracker.tracker.catalog import ContentCatalog, RetrievableDealsCatalog
from spark_tracker.tracker.round_mapper import map_round

logger = logging.getLogger(__name__)


class TrackerState(Enum):
    POLLING = "polling"
    MAPPING = "mapping"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


class ChainClient(Protocol):
    """链上读端口（MeridianClient 实现）。"""

    @property
    def contract_address(self) -> str:
        ...

    def current_round_index(self) -> int:
        ...

    def round_start_epoch(self, round_index: int) -> int:
        ...


def _backoff_seconds(base: float, max_seconds: float, attempt: int) -> float:
    """指数退避（带上限）。"""
    if base <= 0:
        base = 1
    sec = base * (2 ** min(attempt, 32))
    return min(sec, max(max_seconds, base))


class RoundTracker:
    def __init__(
        self,
        chain: ChainClient,
        store: RoundStore,
        catalog: ContentCatalog,
        settings: Settings,
        map_round_func: Callable[..., int] = map_round,
    ) -> None:
        self._chain = chain
        self._store = store
        self._catalog = catalog
        self._s = settings
        self._map_round = map_round_func

        self._lock = threading.Lock()
        self._state = TrackerState.STOPPED
        self._spark_round_number: Optional[int] = None
        self._last_error: Optional[BaseException] = None
        self._failed = False
        self._round_resolved = threading.Event()

    # === 对外状态（健康检查使用） ===

    @property
    def state(self) -> TrackerState:
        with self._lock:
            return self._state

    @property
    def spark_round_number(self) -> Optional[int]:
        with self._lock:
            return self._spark_round_number

    @property
    def last_error(self) -> Optional[BaseException]:
        with self._lock:
            return self._last_error

    @property
    def failed(self) -> bool:
        with self._lock:
            return self._failed

    def wait_for_round(self, timeout: Optional[float] = None) -> Optional[int]:
        """等待第一次成功映射，返回当前 Spark 轮次号（超时，或追踪在解析出轮次前停止，返回 None）。"""
        self._round_resolved.wait(timeout)
        return self.spark_round_number

    def _set_state(self, state: TrackerState) -> None:
        with self._lock:
            self._state = state

    def _sleep(self, stop_event: threading.Event, seconds: float) -> None:
        self._set_state(TrackerState.SLEEPING)
        stop_event.wait(seconds)

    # === 主循环 ===

    def run(self, stop_event: threading.Event) -> Optional[int]:
        """运行轮询循环直到 stop_event 被设置，返回最后一次解析到的 Spark 轮次号。"""
        contract_address = self._chain.contract_address
        chain_failures = 0
        mapper_failures = 0
        logger.info(
            "轮次追踪启动：contract=%s interval=%ss policy=%s",
            contract_address,
            self._s.poll_interval_seconds,
            self._s.store_failure_policy,
        )

        try:
            while not stop_event.is_set():
                self._set_state(TrackerState.POLLING)
                try:
                    round_index = self._chain.current_round_index()
                    start_epoch = self._chain.round_start_epoch(round_index)
                except TransientChainError as e:
                    delay = _backoff_seconds(self._s.backoff_base_seconds, self._s.backoff_max_seconds, chain_failures)
                    chain_failures += 1
                    logger.warning("链上读取失败，退避 %ss 后重试：failures=%s err=%s", delay, chain_failures, e)
                    self._sleep(stop_event, delay)
                    continue
                except Exception:
                    delay = _backoff_seconds(self._s.backoff_base_seconds, self._s.backoff_max_seconds, chain_failures)
                    chain_failures += 1
                    logger.exception("链上读取异常，退避 %ss 后重试：failures=%s", delay, chain_failures)
                    self._sleep(stop_event, delay)
                    continue
                chain_failures = 0

                self._set_state(TrackerState.MAPPING)
                try:
                    spark_round = self._map_round(
                        self._store,
                        contract_address,
                        round_index,
                        start_epoch,
                        self._catalog,
                        max_tasks_per_node=self._s.max_tasks_per_node,
                        max_attempts=self._s.mapper_max_attempts,
                    )
                except Exception as e:
                    mapper_failures += 1
                    with self._lock:
                        self._last_error = e
                    logger.exception(
                        "轮次映射失败：contract=%s round=%s failures=%s",
                        contract_address,
                        round_index,
                        mapper_failures,
                    )
                    if (
                        self._s.store_failure_policy == "exit"
                        and mapper_failures >= self._s.store_max_consecutive_failures
                    ):
                        with self._lock:
                            self._failed = True
                        logger.error("轮次映射连续失败 %s 次，按策略停止追踪", mapper_failures)
                        break
                    delay = _backoff_seconds(
                        self._s.backoff_base_seconds, self._s.backoff_max_seconds, mapper_failures - 1
                    )
                    self._sleep(stop_event, delay)
                    continue
                mapper_failures = 0

                with self._lock:
                    previous = self._spark_round_number
                    self._spark_round_number = spark_round
                    self._last_error = None
                self._round_resolved.set()
                if previous != spark_round:
                    logger.info(
                        "当前轮次：spark_round=%s contract=%s round=%s start_epoch=%s",
                        spark_round,
                        contract_address,
                        round_index,
                        start_epoch,
                    )

                self._sleep(stop_event, self._s.poll_interval_seconds)
        finally:
            self._set_state(TrackerState.STOPPED)
            # 唤醒仍在 wait_for_round 的调用方（未解析到轮次时得到 None）
            self._round_resolved.set()
            logger.info("轮次追踪已停止：spark_round=%s failed=%s", self.spark_round_number, self.failed)

        return self.spark_round_number


class TrackerHandle:
    """后台追踪线程的句柄（健康检查/优雅停止）。"""

    def __init__(self, tracker: RoundTracker, thread: threading.Thread, stop_event: threading.Event) -> None:
        self._tracker = tracker
        self._thread = thread
        self._stop_event = stop_event

    @property
    def spark_round_number(self) -> Optional[int]:
        return self._tracker.spark_round_number

    @property
    def state(self) -> TrackerState:
        return self._tracker.state

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._tracker.last_error

    @property
    def failed(self) -> bool:
        return self._tracker.failed

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def wait_for_round(self, timeout: Optional[float] = None) -> Optional[int]:
        return self._tracker.wait_for_round(timeout)

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)


def start_round_tracker(
    store: RoundStore,
    chain: ChainClient,
    stop_event: threading.Event,
    catalog: Optional[ContentCatalog] = None,
    settings: Optional[Settings] = None,
    map_round_func: Callable[..., int] = map_round,
) -> TrackerHandle:
    """在后台线程中启动轮次追踪。"""
    s = settings or default_settings
    if catalog is None:
        catalog = RetrievableDealsCatalog(store, refresh_seconds=s.catalog_refresh_seconds)

    tracker = RoundTracker(chain, store, catalog, s, map_round_func=map_round_func)
    thread = threading.Thread(target=tracker.run, args=(stop_event,), daemon=True, name="RoundTracker")
    thread.start()
    return TrackerHandle(tracker, thread, stop_event)
