"""
MySQL 数据访问层（PyMySQL）。

设计目标：
- 连接复用（简易连接池）
- 事务边界清晰：with 块正常结束即提交，抛异常即回滚
- 参数化 SQL（安全：避免注入）
"""

from __future__ import annotations

import logging
import queue
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import pymysql
from pymysql.connections import Connection
from pymysql.cursors import DictCursor

from spark_tracker.db.schema import ROUNDS_SCHEMA
from spark_tracker.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class MySqlPool:
    """
    简易连接池。

    说明：
    - 为了减少依赖，这里不引入第三方连接池库；
    - 连接在首次需要时创建，避免启动阶段因数据库短暂不可用直接崩溃；
    - 借出的连接数以 pool_size 为上限，池满时等待 acquire_timeout 秒，仍拿不到则抛 StoreUnavailable。
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        pool_size: int = 5,
        acquire_timeout: float = 30,
    ) -> None:
        self._dsn = dict(
            host=host,
            port=port,
            user=user,
            password=password,
            database=database,
            charset="utf8mb4",
            cursorclass=DictCursor,
            autocommit=False,
            connect_timeout=10,
            read_timeout=30,
            write_timeout=30,
        )
        self._size = max(pool_size, 1)
        self._acquire_timeout = acquire_timeout
        self._pool: "queue.Queue[Connection]" = queue.Queue(maxsize=self._size)
        # 同时借出的连接数不超过 pool_size
        self._slots = threading.BoundedSemaphore(self._size)

    def _new_conn(self) -> Connection:
        return pymysql.connect(**self._dsn)

    def _acquire(self) -> Connection:
        if not self._slots.acquire(timeout=self._acquire_timeout):
            raise StoreUnavailable(f"MySQL 连接池已满：size={self._size} timeout={self._acquire_timeout}s")
        try:
            try:
                return self._pool.get_nowait()
            except queue.Empty:
                return self._new_conn()
        except BaseException:
            self._slots.release()
            raise

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """取出一个连接并开启事务；正常退出提交，异常退出回滚。"""
        conn: Optional[Connection] = self._acquire()
        try:
            # 避免复用到已断开的连接
            try:
                conn.ping(reconnect=True)
            except pymysql.err.MySQLError:
                logger.warning("MySQL ping 失败，重建连接")
                conn.close()
                conn = None
                conn = self._new_conn()
            conn.begin()
            yield conn
            conn.commit()
        except Exception:
            if conn is not None:
                try:
                    conn.rollback()
                except pymysql.err.MySQLError:
                    # 回滚失败的连接状态未知，不再放回池中
                    logger.exception("MySQL rollback 失败，丢弃连接")
                    conn = None
            raise
        finally:
            try:
                if conn is not None:
                    try:
                        self._pool.put_nowait(conn)
                    except queue.Full:
                        # 连接池满了，直接关闭连接避免泄漏
                        conn.close()
            finally:
                self._slots.release()

    def close(self) -> None:
        """关闭池中所有空闲连接。"""
        while True:
            try:
                conn = self._pool.get_nowait()
            except queue.Empty:
                return
            try:
                conn.close()
            except pymysql.err.MySQLError:
                logger.warning("MySQL 连接关闭失败")


def init_schema(pool: MySqlPool) -> None:
    """初始化表结构（CREATE TABLE IF NOT EXISTS，可重复执行）。"""
    statements = [s.strip() for s in ROUNDS_SCHEMA.split(";") if s.strip()]
    with pool.connection() as conn:
        with conn.cursor() as cur:
            for stmt in statements:
                cur.execute(stmt)
    logger.info("MySQL schema 初始化完成：tables=%s", len(statements))
