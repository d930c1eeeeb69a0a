"""
Flask 应用工厂。

创建和配置 Flask 应用实例。
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import Flask, jsonify

from spark_tracker.db.round_store import RoundStore
from spark_tracker.tracker.round_poller import TrackerHandle

logger = logging.getLogger(__name__)


def create_flask_app(store: RoundStore, tracker: Optional[TrackerHandle] = None) -> Flask:
    """
    创建 Flask 应用实例。

    Args:
        store: 轮次存储
        tracker: 轮次追踪句柄（用于健康检查，可为空）

    Returns:
        Flask 应用实例
    """
    app = Flask(__name__)

    # 注册路由
    from spark_tracker.web import routes

    routes.init_routes(app, store)

    # 健康检查：追踪线程按策略退出后返回 503，便于外部重启
    @app.route("/health")
    def health_check():
        if tracker is None:
            return jsonify({"status": "ok", "service": "Spark Round Tracker", "tracker": None})

        body = {
            "status": "ok",
            "service": "Spark Round Tracker",
            "tracker": {
                "state": tracker.state.value,
                "sparkRoundNumber": (
                    str(tracker.spark_round_number) if tracker.spark_round_number is not None else None
                ),
                "lastError": str(tracker.last_error) if tracker.last_error else None,
            },
        }
        if tracker.failed:
            body["status"] = "failed"
            return jsonify(body), 503
        return jsonify(body), 200

    logger.info("Flask 应用创建成功")

    return app


def run_flask_in_thread(app: Flask, host: str, port: int, debug: bool = False) -> None:
    """在后台线程中运行 Flask 应用（禁用重载器，后台线程中不兼容）。"""
    app.run(host=host, port=port, debug=debug, use_reloader=False)
