"""
平台配置服务：管理 system_config 表的读写。

各支付渠道、分账、钱包的配置以 JSON 文档形式保存（键如 payments.paypal），
敏感字段使用 Fernet 对称加密，密钥由 JWT_SECRET 通过 PBKDF2 派生。
读取时解析为带默认值的 dataclass（PayPalSettings 等），在构造客户端时注入。
"""

import base64
import json
import logging
import os
from datetime import datetime

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.database import get_db
from app.models.schemas import (
    FeeCondition,
    MarketplaceSettings,
    MercadoPagoSettings,
    OfflineSettings,
    PayPalSettings,
    PaystackSettings,
    SquareSettings,
    StripeSettings,
    WalletSettings,
)
from app.services.money import to_decimal

logger = logging.getLogger(__name__)


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


# 配置分区 → system_config 键
SECTION_KEYS = {
    "paypal": "payments.paypal",
    "mercadopago": "payments.mercadopago",
    "paystack": "payments.paystack",
    "square": "payments.square",
    "stripe": "payments.stripe",
    "offline": "payments.offline",
    "wallet": "wallet",
}

# 需要加密存储的字段
SECRET_FIELDS = {
    "paypal": {"client_secret"},
    "mercadopago": {"access_token", "client_secret", "webhook_secret"},
    "paystack": {"secret_key", "webhook_secret"},
    "square": {"access_token", "webhook_signature_key"},
    "stripe": {"api_key"},
    "offline": set(),
    "wallet": set(),
}

PAYSTACK_CURRENCIES = {"NGN", "GHS", "ZAR", "USD", "KES"}
FEE_TYPES = {"fixed", "percentage", "conditional"}
FEE_BEARERS = {"account", "subaccount", "all", "all_proportional"}


def _get_fernet() -> Fernet:
    """从 JWT_SECRET 环境变量派生 Fernet 加密密钥。"""
    secret = os.getenv("JWT_SECRET", "default-secret-key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"paybridge-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def _encrypt(plaintext: str) -> str:
    """加密明文字符串，返回密文。"""
    f = _get_fernet()
    return f.encrypt(plaintext.encode("utf-8")).decode("utf-8")


def _decrypt(ciphertext: str) -> str:
    """解密密文字符串，返回明文。"""
    f = _get_fernet()
    return f.decrypt(ciphertext.encode("utf-8")).decode("utf-8")


def encrypt_json(data: dict) -> str:
    return _encrypt(json.dumps(data, ensure_ascii=False))


def decrypt_json(ciphertext: str) -> dict:
    return json.loads(_decrypt(ciphertext))


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        db.execute(
            """INSERT INTO system_config (config_key, config_value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(config_key) DO UPDATE SET
                   config_value = excluded.config_value,
                   updated_at = excluded.updated_at""",
            (key, value, now),
        )
        db.commit()
    finally:
        db.close()


def get_json_config(key: str, default=None):
    """读取 JSON 格式的配置值，解析失败返回 default。"""
    raw = get_config(key)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("配置值不是合法 JSON: key=%s", key)
        return default


def set_json_config(key: str, value) -> None:
    set_config(key, json.dumps(value, ensure_ascii=False, default=str))


# ── 分区配置 ──────────────────────────────────────────────


def _section_key(section: str) -> str:
    if section not in SECTION_KEYS:
        raise PlatformConfigError(f"未知的配置分区: {section}")
    return SECTION_KEYS[section]


def load_section(section: str) -> dict:
    """读取某分区的配置并解密敏感字段。"""
    data = get_json_config(_section_key(section), {}) or {}
    for name in SECRET_FIELDS[section]:
        value = data.get(name)
        if not value:
            continue
        try:
            data[name] = _decrypt(value)
        except InvalidToken:
            logger.error("解密配置失败: section=%s, field=%s", section, name)
            data[name] = ""
    return data


def save_section(section: str, values: dict) -> dict:
    """
    保存分区配置：与已有配置合并 → 校验 → 敏感字段加密后写入。

    未提交或提交为 None 的敏感字段保留原值，便于后台只修改部分字段。

    Raises:
        PlatformConfigError: 配置值不合法。
    """
    key = _section_key(section)
    merged = load_section(section)
    for name, value in values.items():
        if value is None and name in SECRET_FIELDS[section]:
            continue
        merged[name] = value

    _validate_section(section, merged)

    stored = dict(merged)
    for name in SECRET_FIELDS[section]:
        if stored.get(name):
            stored[name] = _encrypt(str(stored[name]))
    set_json_config(key, stored)
    logger.info("配置已保存: section=%s", section)
    return get_section_status(section)


def _validate_section(section: str, data: dict) -> None:
    if data.get("mode", "sandbox") not in ("sandbox", "live"):
        raise PlatformConfigError("mode 只能是 sandbox 或 live")
    if data.get("order_approval", "automatic") not in ("automatic", "manual"):
        raise PlatformConfigError("order_approval 只能是 automatic 或 manual")

    if section == "paystack":
        currency = str(data.get("currency", "NGN")).upper()
        if currency not in PAYSTACK_CURRENCIES:
            raise PlatformConfigError(f"Paystack 不支持币种: {currency}")

    if section == "offline":
        if data.get("order_status", "pending_payment") not in ("pending_payment", "pending_approval"):
            raise PlatformConfigError("线下支付初始状态只能是 pending_payment 或 pending_approval")

    if section == "wallet":
        try:
            min_deposit = to_decimal(data.get("min_deposit", 1))
            max_deposit = to_decimal(data.get("max_deposit", 10000))
        except ValueError as e:
            raise PlatformConfigError(str(e)) from e
        if min_deposit <= 0 or max_deposit < min_deposit:
            raise PlatformConfigError("充值金额上下限设置不合法")

    marketplace = data.get("marketplace")
    if isinstance(marketplace, dict):
        fee_type = marketplace.get("fee_type", "percentage")
        if fee_type not in FEE_TYPES:
            raise PlatformConfigError(f"不支持的费率类型: {fee_type}")
        if marketplace.get("fee_bearer", "account") not in FEE_BEARERS:
            raise PlatformConfigError("fee_bearer 取值不合法")
        try:
            fee_value = to_decimal(marketplace.get("fee_value", 0))
        except ValueError as e:
            raise PlatformConfigError(str(e)) from e
        if fee_value < 0:
            raise PlatformConfigError("平台费率不能为负数")
        if fee_type == "percentage" and fee_value > 100:
            raise PlatformConfigError("百分比费率不能超过 100")


def _mask(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 4:
        return "****"
    return "****" + value[-4:]


def get_section_status(section: str) -> dict:
    """返回分区配置（敏感字段打码），供管理后台展示。"""
    data = load_section(section)
    for name in SECRET_FIELDS[section]:
        data[name] = _mask(data.get(name, ""))
    return data


# ── 类型化配置加载 ────────────────────────────────────────


def _as_bool(value, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _build_marketplace(data: dict | None) -> MarketplaceSettings:
    data = data or {}
    conditions = []
    for raw in data.get("fee_conditions") or []:
        conditions.append(FeeCondition(
            type=raw.get("type", "percentage"),
            value=to_decimal(raw.get("value", 0)),
            min_amount=to_decimal(raw["min_amount"]) if raw.get("min_amount") not in (None, "") else None,
            max_amount=to_decimal(raw["max_amount"]) if raw.get("max_amount") not in (None, "") else None,
            vendor_tier=raw.get("vendor_tier") or None,
        ))
    return MarketplaceSettings(
        enabled=_as_bool(data.get("enabled"), False),
        fee_type=data.get("fee_type", "percentage"),
        fee_value=to_decimal(data.get("fee_value", 0)),
        fee_conditions=conditions,
        auto_payout=_as_bool(data.get("auto_payout"), True),
        payout_delay_days=int(data.get("payout_delay_days") or 0),
        fee_bearer=data.get("fee_bearer", "account"),
    )


def load_paypal_settings() -> PayPalSettings:
    d = load_section("paypal")
    return PayPalSettings(
        enabled=_as_bool(d.get("enabled")),
        mode=d.get("mode", "sandbox"),
        client_id=d.get("client_id", ""),
        client_secret=d.get("client_secret", ""),
        webhook_id=d.get("webhook_id", ""),
        order_approval=d.get("order_approval", "automatic"),
        brand_name=d.get("brand_name", ""),
        currency=str(d.get("currency", "USD")).upper(),
        marketplace=_build_marketplace(d.get("marketplace")),
    )


def load_mercadopago_settings() -> MercadoPagoSettings:
    d = load_section("mercadopago")
    return MercadoPagoSettings(
        enabled=_as_bool(d.get("enabled")),
        mode=d.get("mode", "sandbox"),
        access_token=d.get("access_token", ""),
        public_key=d.get("public_key", ""),
        client_id=d.get("client_id", ""),
        client_secret=d.get("client_secret", ""),
        webhook_secret=d.get("webhook_secret", ""),
        order_approval=d.get("order_approval", "automatic"),
        brand_name=d.get("brand_name", ""),
        currency=str(d.get("currency", "BRL")).upper(),
        marketplace=_build_marketplace(d.get("marketplace")),
    )


def load_paystack_settings() -> PaystackSettings:
    d = load_section("paystack")
    return PaystackSettings(
        enabled=_as_bool(d.get("enabled")),
        mode=d.get("mode", "sandbox"),
        secret_key=d.get("secret_key", ""),
        public_key=d.get("public_key", ""),
        webhook_secret=d.get("webhook_secret", ""),
        order_approval=d.get("order_approval", "automatic"),
        currency=str(d.get("currency", "NGN")).upper(),
        channels=list(d.get("channels") or []),
        marketplace=_build_marketplace(d.get("marketplace")),
    )


def load_square_settings() -> SquareSettings:
    d = load_section("square")
    return SquareSettings(
        enabled=_as_bool(d.get("enabled")),
        mode=d.get("mode", "sandbox"),
        access_token=d.get("access_token", ""),
        location_id=d.get("location_id", ""),
        webhook_signature_key=d.get("webhook_signature_key", ""),
        webhook_url=d.get("webhook_url", ""),
        order_approval=d.get("order_approval", "automatic"),
        brand_name=d.get("brand_name", ""),
        support_email=d.get("support_email", ""),
        currency=str(d.get("currency", "USD")).upper(),
    )


def load_stripe_settings() -> StripeSettings:
    d = load_section("stripe")
    return StripeSettings(
        enabled=_as_bool(d.get("enabled")),
        api_key=d.get("api_key", ""),
        currency=str(d.get("currency", "USD")).upper(),
    )


def load_offline_settings() -> OfflineSettings:
    d = load_section("offline")
    return OfflineSettings(
        enabled=_as_bool(d.get("enabled")),
        order_status=d.get("order_status", "pending_payment"),
        instructions=d.get("instructions", ""),
    )


def load_wallet_settings() -> WalletSettings:
    d = load_section("wallet")
    presets = d.get("preset_amounts")
    return WalletSettings(
        enabled=_as_bool(d.get("enabled"), True),
        min_deposit=to_decimal(d.get("min_deposit", 1)),
        max_deposit=to_decimal(d.get("max_deposit", 10000)),
        preset_amounts=[int(p) for p in presets] if presets else [10, 25, 50, 100],
    )


def get_public_base_url() -> str:
    """对外访问地址，用于拼接回跳 URL 和 Webhook URL。"""
    return os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
