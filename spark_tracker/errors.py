"""
轮次追踪相关的异常类型。

传播约定：
- TransientChainError：只在轮询循环内部处理（退避重试），不向外抛出；
- DuplicateRoundRace：只在轮次映射内部处理（回滚后重读），不向外抛出；
- CatalogExhausted / StoreUnavailable：整个映射事务回滚后抛给调用方。
"""

from __future__ import annotations

from typing import Optional


class TrackerError(Exception):
    """所有轮次追踪异常的基类。"""


class TransientChainError(TrackerError):
    """链上 RPC 调用失败或超时（可重试）。"""


class RoundStartNotFound(TransientChainError):
    """在回溯窗口内没有找到对应轮次的 RoundStart 事件。"""

    def __init__(self, round_index: int, from_block: int, to_block: int) -> None:
        super().__init__(
            f"RoundStart 事件未找到：round_index={round_index} blocks=[{from_block}, {to_block}]"
        )
        self.round_index = round_index
        self.from_block = from_block
        self.to_block = to_block


class DuplicateRoundRace(TrackerError):
    """并发映射冲突：唯一约束/主键冲突，或 InnoDB 死锁、锁等待超时。"""


class CatalogExhausted(TrackerError):
    """任务目录无法提供完整的一批检索任务。"""


class StoreUnavailable(TrackerError):
    """数据库连接/事务失败（与约束冲突无关）。"""


class RetrievalNotFound(TrackerError):
    """检索任务不存在。"""


class RetrievalAlreadyCompleted(TrackerError):
    """检索任务的结果已经上报过。"""


class InvalidRetrievalResult(TrackerError):
    """检索结果字段不符合列定义（例如超长）。column 为出错的列名（可能未知）。"""

    def __init__(self, message: str, column: Optional[str] = None) -> None:
        super().__init__(message)
        self.column = column
