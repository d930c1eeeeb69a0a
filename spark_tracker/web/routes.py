"""
Flask 路由定义。

轮次查询、检索任务分配、检索结果上报。
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, jsonify, request

from spark_tracker.db.round_store import RoundStore
from spark_tracker.errors import (
    InvalidRetrievalResult,
    RetrievalAlreadyCompleted,
    RetrievalNotFound,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

# 与 retrieval_results / retrieval_tasks 的 VARCHAR 长度一致
RESULT_FIELD_MAX_LENGTH = {
    "walletAddress": 255,
    "providerAddress": 255,
    "protocol": 32,
}

_RESULT_COLUMN_FIELDS = {
    "wallet_address": "walletAddress",
    "provider_address": "providerAddress",
    "protocol": "protocol",
}


def _too_long(field: str, value: Any) -> bool:
    return isinstance(value, str) and len(value) > RESULT_FIELD_MAX_LENGTH[field]


def _round_with_tasks(store: RoundStore, spark_round: Any) -> dict:
    body = spark_round.to_dict()
    body["retrievalTasks"] = [t.to_dict() for t in store.list_retrieval_tasks(spark_round.id)]
    return body


def init_routes(app: Any, store: RoundStore) -> None:
    """
    初始化所有路由。

    Args:
        app: Flask 应用实例
        store: 轮次存储
    """
    # 每个 app 一个蓝图实例，避免测试中重复注册
    api_bp = Blueprint("api", __name__, url_prefix="/api")

    @api_bp.errorhandler(StoreUnavailable)
    def handle_store_unavailable(e: StoreUnavailable):
        logger.error("数据库不可用：%s", e)
        return jsonify({"error": "数据库暂不可用"}), 503

    # ========== API: 轮次 ==========

    @api_bp.route("/rounds/current", methods=["GET"])
    def get_current_round():
        """
        获取最新的 Spark 轮次及其任务。

        Response:
            {"id": "3", "meridianAddress": "0x..", "meridianRound": "121", ..., "retrievalTasks": [...]}
        """
        spark_round = store.latest_spark_round()
        if spark_round is None:
            return jsonify({"error": "尚无轮次"}), 404
        return jsonify(_round_with_tasks(store, spark_round)), 200

    @api_bp.route("/rounds/<int:round_id>", methods=["GET"])
    def get_round(round_id: int):
        spark_round = store.get_spark_round(round_id)
        if spark_round is None:
            return jsonify({"error": "轮次不存在"}), 404
        return jsonify(_round_with_tasks(store, spark_round)), 200

    # ========== API: 检索 ==========

    @api_bp.route("/retrievals", methods=["POST"])
    def create_retrieval():
        """
        从当前轮次随机分配一个检索任务。

        Response:
            {"id": 12, "roundId": "3", "cid": "bafy..", "minerId": "f01234", "providerAddress": null, "protocol": null}
        """
        spark_round = store.latest_spark_round()
        if spark_round is None:
            return jsonify({"error": "尚无轮次"}), 404
        task = store.pick_random_task(spark_round.id)
        if task is None:
            return jsonify({"error": "当前轮次没有任务"}), 404
        return jsonify(task.to_dict()), 200

    @api_bp.route("/retrievals/<int:task_id>", methods=["PATCH"])
    def set_retrieval_result(task_id: int):
        """
        上报检索结果。

        Request Body:
            {"walletAddress": "f1..", "success": true, "providerAddress": "/dns/..", "protocol": "graphsync"}
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Invalid JSON Body"}), 400

        wallet_address = data.get("walletAddress")
        if not wallet_address or not isinstance(wallet_address, str):
            return jsonify({"error": "Invalid .walletAddress"}), 400
        success = data.get("success")
        if not isinstance(success, bool):
            return jsonify({"error": "Invalid .success"}), 400
        provider_address = data.get("providerAddress")
        if provider_address is not None and not isinstance(provider_address, str):
            return jsonify({"error": "Invalid .providerAddress"}), 400
        protocol = data.get("protocol")
        if protocol is not None and not isinstance(protocol, str):
            return jsonify({"error": "Invalid .protocol"}), 400
        for field, value in (
            ("walletAddress", wallet_address),
            ("providerAddress", provider_address),
            ("protocol", protocol),
        ):
            if _too_long(field, value):
                return jsonify({"error": f"Invalid .{field}"}), 400

        try:
            store.save_retrieval_result(
                task_id,
                wallet_address=wallet_address,
                success=success,
                provider_address=provider_address,
                protocol=protocol,
            )
        except RetrievalNotFound:
            return jsonify({"error": "Retrieval Not Found"}), 404
        except RetrievalAlreadyCompleted:
            return jsonify({"error": "Retrieval Already Completed"}), 409
        except InvalidRetrievalResult as e:
            logger.warning("检索结果被数据库拒绝：task_id=%s column=%s", task_id, e.column)
            field = _RESULT_COLUMN_FIELDS.get(e.column or "")
            return jsonify({"error": f"Invalid .{field}" if field else "Invalid Retrieval Result"}), 400

        return jsonify({"ok": True}), 200

    # 注册蓝图
    app.register_blueprint(api_bp)

    logger.info("路由注册完成")
