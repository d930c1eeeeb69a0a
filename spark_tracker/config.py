"""
配置模块：从环境变量读取运行参数。

说明：
- 优先读取 .env（若存在），便于本地/容器化部署；
- 生产环境推荐直接注入环境变量，避免在镜像/服务器落盘敏感信息。
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置（Pydantic v2）。"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ---------- MySQL ----------
    mysql_host: str = Field(default="127.0.0.1", alias="MYSQL_HOST")
    mysql_port: int = Field(default=3306, alias="MYSQL_PORT")
    mysql_user: str = Field(default="root", alias="MYSQL_USER")
    mysql_password: str = Field(default="", alias="MYSQL_PASSWORD")
    mysql_database: str = Field(default="spark", alias="MYSQL_DATABASE")
    mysql_pool_size: int = Field(default=5, alias="MYSQL_POOL_SIZE")

    # ---------- 链上（Meridian 合约） ----------
    rpc_url: str = Field(default="https://api.node.glif.io/rpc/v1", alias="RPC_URL")
    meridian_contract_address: str = Field(
        default="0x8460766edc62b525fc1fa4d628fc79229dc73031",
        alias="MERIDIAN_CONTRACT_ADDRESS",
    )
    rpc_timeout_seconds: int = Field(default=20, alias="RPC_TIMEOUT_SECONDS")
    rpc_retry_times: int = Field(default=2, alias="RPC_RETRY_TIMES")
    # Filecoin 每 30 秒一个 epoch，2880 约等于一天
    round_start_lookback_blocks: int = Field(default=2880, alias="ROUND_START_LOOKBACK_BLOCKS")

    # ---------- 轮询 / 退避 ----------
    poll_interval_seconds: float = Field(default=30, alias="POLL_INTERVAL_SECONDS")
    backoff_base_seconds: float = Field(default=5, alias="BACKOFF_BASE_SECONDS")
    backoff_max_seconds: float = Field(default=300, alias="BACKOFF_MAX_SECONDS")

    # ---------- 轮次映射 ----------
    mapper_max_attempts: int = Field(default=5, alias="MAPPER_MAX_ATTEMPTS")
    max_tasks_per_node: int = Field(default=15, alias="MAX_TASKS_PER_NODE")

    # 数据库持续不可用时的策略：retry=退避后无限重试；exit=连续失败 N 次后退出进程
    store_failure_policy: Literal["retry", "exit"] = Field(default="retry", alias="STORE_FAILURE_POLICY")
    store_max_consecutive_failures: int = Field(default=10, alias="STORE_MAX_CONSECUTIVE_FAILURES")

    # ---------- 任务目录 ----------
    catalog_refresh_seconds: int = Field(default=300, alias="CATALOG_REFRESH_SECONDS")

    # ---------- 日志 ----------
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # ---------- Flask Web Server ----------
    flask_enabled: int = Field(default=1, alias="FLASK_ENABLED")
    flask_host: str = Field(default="0.0.0.0", alias="FLASK_HOST")
    flask_port: int = Field(default=8080, alias="FLASK_PORT")
    flask_debug: int = Field(default=0, alias="FLASK_DEBUG")

    def contract_address(self) -> str:
        """合约地址统一小写，作为 spark_rounds.meridian_address 的取值。"""
        return (self.meridian_contract_address or "").strip().lower()


settings = Settings()
