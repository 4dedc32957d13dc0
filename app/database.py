"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

import bcrypt
from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/paybridge.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS admin (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        VARCHAR(64)  NOT NULL UNIQUE,
    password_hash   VARCHAR(128) NOT NULL,
    login_fail_count INTEGER     DEFAULT 0,
    locked_until    DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS users (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    email           VARCHAR(128) NOT NULL UNIQUE,
    display_name    VARCHAR(128),
    vendor_tier     VARCHAR(32),
    wallet_balance  INTEGER      NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    customer_id     INTEGER      REFERENCES users(id),
    payment_method  VARCHAR(32)  NOT NULL,
    status          VARCHAR(32)  NOT NULL DEFAULT 'pending_payment',
    currency        VARCHAR(8)   NOT NULL DEFAULT 'USD',
    transaction_id  VARCHAR(128),
    details         TEXT         NOT NULL DEFAULT '{}',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS order_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        INTEGER      NOT NULL REFERENCES orders(id),
    item_type       VARCHAR(16)  NOT NULL DEFAULT 'regular',
    label           VARCHAR(256) NOT NULL,
    description     TEXT,
    amount          DECIMAL(12,2) NOT NULL,
    quantity        INTEGER      NOT NULL DEFAULT 1,
    currency        VARCHAR(8)   NOT NULL DEFAULT 'USD',
    vendor_id       INTEGER,
    post_author_id  INTEGER,
    subscription_unit      VARCHAR(16),
    subscription_frequency INTEGER,
    trial_days      INTEGER
);

CREATE TABLE IF NOT EXISTS order_refs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        INTEGER      NOT NULL REFERENCES orders(id),
    ref_key         VARCHAR(64)  NOT NULL,
    ref_value       VARCHAR(191) NOT NULL,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS wallet_transactions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER      NOT NULL REFERENCES users(id),
    transaction_type VARCHAR(20) NOT NULL,
    amount          INTEGER      NOT NULL,
    balance_after   INTEGER      NOT NULL,
    currency        VARCHAR(3)   NOT NULL DEFAULT 'USD',
    reference_type  VARCHAR(50),
    reference_id    INTEGER,
    gateway         VARCHAR(50),
    gateway_transaction_id VARCHAR(255),
    description     TEXT,
    status          VARCHAR(20)  NOT NULL DEFAULT 'completed',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS transients (
    transient_key   VARCHAR(191) PRIMARY KEY,
    value           TEXT         NOT NULL,
    expires_at      INTEGER      NOT NULL
);

CREATE TABLE IF NOT EXISTS vendor_connections (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    vendor_id       INTEGER      NOT NULL REFERENCES users(id),
    provider        VARCHAR(32)  NOT NULL,
    credentials     TEXT         NOT NULL,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS vendor_sub_orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    parent_order_id INTEGER      NOT NULL REFERENCES orders(id),
    vendor_id       INTEGER      NOT NULL,
    vendor_amount   DECIMAL(12,2) NOT NULL,
    payout_status   VARCHAR(16)  NOT NULL DEFAULT 'pending',
    payout_item_id  VARCHAR(64),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS payout_jobs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        INTEGER      NOT NULL REFERENCES orders(id),
    provider        VARCHAR(32)  NOT NULL DEFAULT 'paypal',
    run_at          INTEGER      NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'queued',
    attempts        INTEGER      NOT NULL DEFAULT 0,
    last_error      TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_orders_status
    ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_customer
    ON orders(customer_id);
CREATE INDEX IF NOT EXISTS idx_order_items_order
    ON order_items(order_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_order_refs_key_value
    ON order_refs(ref_key, ref_value);
CREATE INDEX IF NOT EXISTS idx_order_refs_order
    ON order_refs(order_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_user
    ON wallet_transactions(user_id);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_type
    ON wallet_transactions(transaction_type);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_reference
    ON wallet_transactions(reference_type, reference_id);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_created
    ON wallet_transactions(created_at);
CREATE INDEX IF NOT EXISTS idx_transients_expires
    ON transients(expires_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_vendor_connections_vendor_provider
    ON vendor_connections(vendor_id, provider);
CREATE INDEX IF NOT EXISTS idx_vendor_sub_orders_parent
    ON vendor_sub_orders(parent_order_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_payout_jobs_order
    ON payout_jobs(order_id, provider);
CREATE INDEX IF NOT EXISTS idx_payout_jobs_due
    ON payout_jobs(status, run_at);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引，并在首次启动时创建默认管理员。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)

        # 迁移：为已有数据库添加新列
        _migrate_schema(conn)

        # 首次启动：通过环境变量创建默认管理员
        _create_default_admin(conn)

        conn.commit()
    finally:
        conn.close()


def _migrate_schema(conn: sqlite3.Connection) -> None:
    """为已有数据库添加新列（幂等操作）。"""
    # order_items 表添加 trial_days 列
    try:
        conn.execute("SELECT trial_days FROM order_items LIMIT 1")
    except sqlite3.OperationalError:
        conn.execute("ALTER TABLE order_items ADD COLUMN trial_days INTEGER")

    # users 表添加 vendor_tier 列（条件费率按会员等级匹配）
    try:
        conn.execute("SELECT vendor_tier FROM users LIMIT 1")
    except sqlite3.OperationalError:
        conn.execute("ALTER TABLE users ADD COLUMN vendor_tier VARCHAR(32)")


def _create_default_admin(conn: sqlite3.Connection) -> None:
    """如果 admin 表为空，则根据环境变量创建默认管理员账号。"""
    row = conn.execute("SELECT COUNT(*) AS cnt FROM admin").fetchone()
    if row["cnt"] > 0:
        return

    username = os.getenv("ADMIN_USERNAME", "admin")
    password = os.getenv("ADMIN_PASSWORD", "admin123")

    password_hash = bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")

    conn.execute(
        "INSERT INTO admin (username, password_hash) VALUES (?, ?)",
        (username, password_hash),
    )
