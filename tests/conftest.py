"""全局测试配置：测试模式、临时数据库、常用夹具。"""

import os
import sqlite3
import tempfile

# 在任何模块导入之前设置环境变量，
# 防止 app.main 启动事件创建后台任务，并让所有测试共用一个临时数据库。
os.environ["TESTING"] = "1"
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="paybridge_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-paybridge"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin123"
os.environ["PUBLIC_BASE_URL"] = "https://shop.example.com"

import pytest

import app.database as _db_mod
from app.database import init_db


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    tables = [
        row[0] for row in conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
        )
    ]
    for table in tables:
        conn.execute(f"DROP TABLE IF EXISTS {table}")
    conn.commit()
    conn.close()
    init_db()
    yield


@pytest.fixture
def make_user():
    """创建测试用户，返回 User。"""
    from app.services.user_service import UserService

    counter = {"n": 0}

    def _make(email: str | None = None, display_name: str | None = None, vendor_tier: str | None = None):
        counter["n"] += 1
        return UserService().create_user(
            email or f"user{counter['n']}@example.com", display_name, vendor_tier,
        )

    return _make


@pytest.fixture
def make_order(make_user):
    """创建测试订单；未指定买家时自动创建。"""
    from app.services.order_service import OrderService

    def _make(payment_method: str, items: list[dict] | None = None, customer=None, **kwargs):
        customer = customer or make_user()
        items = items or [{"label": "Logo design", "amount": "25.00"}]
        return OrderService().create_order(customer.id, payment_method, items, **kwargs)

    return _make


@pytest.fixture
def user_headers():
    """买家 / 商家认证请求头。"""
    from app.services.auth import create_user_token

    def _headers(user_id: int) -> dict:
        return {"Authorization": f"Bearer {create_user_token(user_id)}"}

    return _headers
