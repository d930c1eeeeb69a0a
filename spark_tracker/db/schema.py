"""
轮次追踪相关的数据库表结构。

注意：init_schema 按分号切分执行，COMMENT 中不要出现分号。
"""

ROUNDS_SCHEMA = """
-- Spark 轮次表：id 由映射事务按 max(id)+1 分配，不使用 AUTO_INCREMENT
CREATE TABLE IF NOT EXISTS spark_rounds (
  id BIGINT UNSIGNED NOT NULL PRIMARY KEY COMMENT 'Spark 轮次号',
  meridian_address VARCHAR(64) NOT NULL COMMENT 'Meridian 合约地址（小写）',
  meridian_round DECIMAL(65, 0) NOT NULL COMMENT '合约上报的轮次索引',
  created_at DATETIME(3) NOT NULL COMMENT '观测到该轮次的时间',
  max_tasks_per_node INT NOT NULL DEFAULT 15 COMMENT '单节点最多分配的任务数',

  UNIQUE KEY uk_meridian_address_round (meridian_address, meridian_round)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COMMENT='Spark 轮次';

-- 合约版本表：每个合约地址首次出现时写入一次，之后不再修改
CREATE TABLE IF NOT EXISTS meridian_contract_versions (
  contract_address VARCHAR(64) NOT NULL PRIMARY KEY COMMENT 'Meridian 合约地址（小写）',
  first_spark_round_number BIGINT UNSIGNED NOT NULL COMMENT '该地址下创建的第一个 Spark 轮次号'
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COMMENT='Meridian 合约版本';

-- 检索任务表：每个轮次固定 TASKS_PER_ROUND 条，随轮次一起创建
CREATE TABLE IF NOT EXISTS retrieval_tasks (
  id BIGINT UNSIGNED AUTO_INCREMENT PRIMARY KEY COMMENT '任务 ID',
  round_id BIGINT UNSIGNED NOT NULL COMMENT '所属 Spark 轮次',
  cid VARCHAR(255) NOT NULL COMMENT '内容标识',
  miner_id VARCHAR(32) NOT NULL COMMENT '存储提供方 actor id（f0 开头）',
  provider_address VARCHAR(255) NULL COMMENT '提供方地址（由上报填写）',
  protocol VARCHAR(32) NULL COMMENT '检索协议（由上报填写）',

  KEY idx_round (round_id),
  CONSTRAINT fk_retrieval_tasks_round FOREIGN KEY (round_id) REFERENCES spark_rounds(id) ON DELETE CASCADE
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COMMENT='检索任务';

-- 可检索的存储订单（任务目录）
CREATE TABLE IF NOT EXISTS retrievable_deals (
  id BIGINT UNSIGNED AUTO_INCREMENT PRIMARY KEY,
  cid VARCHAR(255) NOT NULL COMMENT '内容标识',
  miner_id VARCHAR(32) NOT NULL COMMENT '存储提供方 actor id',
  expires_at DATETIME NOT NULL COMMENT '订单到期时间',

  KEY idx_expires (expires_at)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COMMENT='可检索订单';

-- 检索结果表：每个任务只允许上报一次
CREATE TABLE IF NOT EXISTS retrieval_results (
  retrieval_task_id BIGINT UNSIGNED NOT NULL PRIMARY KEY COMMENT '检索任务 ID',
  wallet_address VARCHAR(255) NOT NULL COMMENT '上报节点钱包地址',
  success TINYINT(1) NOT NULL COMMENT '是否检索成功',
  created_at DATETIME(3) NOT NULL DEFAULT CURRENT_TIMESTAMP(3) COMMENT '上报时间',

  CONSTRAINT fk_retrieval_results_task FOREIGN KEY (retrieval_task_id) REFERENCES retrieval_tasks(id) ON DELETE CASCADE
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COMMENT='检索结果';
"""
