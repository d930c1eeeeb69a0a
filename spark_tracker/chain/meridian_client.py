"""
Meridian 合约只读客户端（以太坊兼容 JSON-RPC，httpx）。

只实现轮次追踪需要的两个读调用：
- current_round_index()：eth_call 调用 currentRoundIndex()
- round_start_epoch(round_index)：在最近的区块范围内查找 RoundStart 事件，返回其区块高度

所有网络/RPC 异常统一转换成 TransientChainError，由轮询循环负责退避重试。
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional

import httpx
from eth_utils import encode_hex, event_signature_to_log_topic, function_signature_to_4byte_selector

from spark_tracker.errors import RoundStartNotFound, TransientChainError

logger = logging.getLogger(__name__)

CURRENT_ROUND_INDEX_SELECTOR = encode_hex(function_signature_to_4byte_selector("currentRoundIndex()"))
ROUND_START_TOPIC = encode_hex(event_signature_to_log_topic("RoundStart(uint256)"))


def _parse_quantity(value: Optional[str], what: str) -> int:
    """解析 0x 开头的十六进制数值（任意精度）。"""
    if not isinstance(value, str) or not value.startswith("0x") or len(value) <= 2:
        raise TransientChainError(f"RPC 返回了无法解析的 {what}：{value!r}")
    try:
        return int(value, 16)
    except ValueError as e:
        raise TransientChainError(f"RPC 返回了无法解析的 {what}：{value!r}") from e


def _log_round_index(log: Dict[str, Any]) -> Optional[int]:
    """从 RoundStart 日志中取出 roundIndex（兼容 indexed/非 indexed 两种 ABI）。"""
    topics = log.get("topics") or []
    if len(topics) > 1:
        return int(topics[1], 16)
    data = log.get("data") or "0x"
    if len(data) < 2 + 64:
        return None
    return int(data[2:66], 16)


class MeridianClient:
    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        timeout_seconds: int = 20,
        retry_times: int = 2,
        lookback_blocks: int = 2880,
        max_retry_delay_seconds: float = 60,
        stop_event: Optional[threading.Event] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._address = contract_address.strip().lower()
        self._retry_times = max(retry_times, 0)
        self._lookback_blocks = max(lookback_blocks, 1)
        self._max_retry_delay = max(float(max_retry_delay_seconds), 0.0)
        self._stop_event = stop_event
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))
        self._request_id = 0

    @property
    def contract_address(self) -> str:
        return self._address

    def close(self) -> None:
        self._client.close()

    def _retry_wait(self, method: str, delay: float) -> None:
        """重试前等待；设置了停止信号时可被立即打断。"""
        delay = min(delay, self._max_retry_delay)
        if self._stop_event is None:
            time.sleep(delay)
            return
        if self._stop_event.wait(delay):
            raise TransientChainError(f"收到停止信号，放弃 RPC 重试：method={method}")

    def _rpc(self, method: str, params: List[Any]) -> Any:
        last_exc: Optional[Exception] = None
        attempts = self._retry_times + 1
        for attempt in range(attempts):
            if self._stop_event is not None and self._stop_event.is_set():
                raise TransientChainError(f"收到停止信号，放弃 RPC 请求：method={method}")
            is_last = attempt + 1 >= attempts
            self._request_id += 1
            payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
            try:
                resp = self._client.post(self._rpc_url, json=payload)
            except httpx.HTTPError as e:
                last_exc = e
                logger.warning(
                    "RPC 请求失败：method=%s attempt=%s/%s err=%r",
                    method,
                    attempt + 1,
                    attempts,
                    e,
                )
                if not is_last:
                    self._retry_wait(method, min(2 * (attempt + 1), 10))
                continue

            if resp.status_code == 429:
                ra = resp.headers.get("Retry-After")
                delay = max(1.0, float(ra)) if ra and ra.isdigit() else 1.0 * (2**attempt)
                delay = min(delay, self._max_retry_delay)
                last_exc = TransientChainError(f"RPC 限流：method={method}")
                logger.warning("RPC 限流：method=%s attempt=%s/%s retry_after=%s", method, attempt + 1, attempts, ra)
                if not is_last:
                    logger.info("RPC 限流退避 %ss：method=%s", delay, method)
                    self._retry_wait(method, delay)
                continue

            if resp.status_code >= 400:
                raise TransientChainError(f"RPC HTTP 错误：method={method} status={resp.status_code}")

            try:
                data = resp.json()
            except ValueError as e:
                raise TransientChainError(f"RPC 返回非 JSON：method={method}") from e
            if data.get("error"):
                err = data["error"]
                msg = err.get("message") if isinstance(err, dict) else str(err)
                raise TransientChainError(f"RPC 错误：method={method} message={msg}")
            return data.get("result")

        raise TransientChainError(f"RPC 重试次数耗尽：method={method} err={last_exc!r}") from last_exc

    def latest_block(self) -> int:
        return _parse_quantity(self._rpc("eth_blockNumber", []), "区块高度")

    def current_round_index(self) -> int:
        result = self._rpc(
            "eth_call",
            [{"to": self._address, "data": CURRENT_ROUND_INDEX_SELECTOR}, "latest"],
        )
        return _parse_quantity(result, "currentRoundIndex")

    def round_start_epoch(self, round_index: int) -> int:
        """返回 round_index 对应 RoundStart 事件所在的区块高度。"""
        to_block = self.latest_block()
        from_block = max(to_block - self._lookback_blocks, 0)
        logs = self._rpc(
            "eth_getLogs",
            [
                {
                    "address": self._address,
                    "fromBlock": hex(from_block),
                    "toBlock": hex(to_block),
                    "topics": [ROUND_START_TOPIC],
                }
            ],
        )
        for log in logs or []:
            if _log_round_index(log) == round_index:
                return _parse_quantity(log.get("blockNumber"), "blockNumber")
        raise RoundStartNotFound(round_index, from_block, to_block)
