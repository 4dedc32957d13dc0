"""
Webhook 签名生成与验证模块。

- Mercado Pago: x-signature 头 "ts=...,v1=..."，HMAC-SHA256(id:{data_id};request-id:{x_request_id};ts:{ts};)
- Paystack: HMAC-SHA512(原始请求体)，十六进制，对比 x-paystack-signature
- Square: Base64(HMAC-SHA256(webhook_url + 原始请求体))，对比 x-square-hmacsha256-signature
- PayPal: SHA256withRSA，签名串 transmission_id|transmission_time|webhook_id|crc32(body)，
  证书从 paypal-cert-url 下载（仅允许 paypal.com 域名）

所有比较使用 hmac.compare_digest。
"""

import base64
import binascii
import hashlib
import hmac
import logging
import zlib
from urllib.parse import urlparse

import httpx
from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

logger = logging.getLogger(__name__)

_cert_cache: dict[str, str] = {}


# ── Mercado Pago ──────────────────────────────────────────


def parse_mercadopago_signature(header: str | None) -> tuple[str | None, str | None]:
    """解析 x-signature 头，返回 (ts, v1)。"""
    ts = v1 = None
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        key = key.strip()
        if key == "ts":
            ts = value.strip()
        elif key == "v1":
            v1 = value.strip()
    return ts, v1


def generate_mercadopago_signature(data_id: str, request_id: str, ts: str, secret: str) -> str:
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_mercadopago_signature(
    signature_header: str | None,
    request_id: str | None,
    data_id: str | None,
    secret: str,
) -> bool:
    """
    校验 Mercado Pago 通知签名。

    未配置 webhook 密钥时跳过校验（接受所有通知）。
    缺少 ts 或 v1 时拒绝。
    """
    if not secret:
        logger.warning("Mercado Pago webhook 密钥未配置，跳过签名校验")
        return True

    ts, v1 = parse_mercadopago_signature(signature_header)
    if not ts or not v1:
        return False

    expected = generate_mercadopago_signature(str(data_id or ""), request_id or "", ts, secret)
    return hmac.compare_digest(expected.encode("utf-8"), v1.encode("utf-8"))


# ── Paystack ──────────────────────────────────────────────


def generate_paystack_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def verify_paystack_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """未配置密钥时跳过校验；配置后签名头缺失即拒绝。"""
    if not secret:
        logger.warning("Paystack webhook 密钥未配置，跳过签名校验")
        return True
    if not signature:
        return False
    expected = generate_paystack_signature(body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


# ── Square ────────────────────────────────────────────────


def generate_square_signature(webhook_url: str, body: bytes, signature_key: str) -> str:
    digest = hmac.new(
        signature_key.encode("utf-8"), webhook_url.encode("utf-8") + body, hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_square_signature(
    body: bytes, signature: str | None, signature_key: str, webhook_url: str,
) -> bool:
    if not signature_key:
        logger.warning("Square webhook 签名密钥未配置，跳过签名校验")
        return True
    if not signature:
        return False
    expected = generate_square_signature(webhook_url, body, signature_key)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


# ── PayPal ────────────────────────────────────────────────


def build_paypal_transmission_string(
    transmission_id: str, transmission_time: str, webhook_id: str, body: bytes,
) -> str:
    crc = zlib.crc32(body) & 0xFFFFFFFF
    return f"{transmission_id}|{transmission_time}|{webhook_id}|{crc}"


def _is_paypal_cert_url(cert_url: str) -> bool:
    parsed = urlparse(cert_url)
    host = (parsed.hostname or "").lower()
    return parsed.scheme == "https" and (host == "paypal.com" or host.endswith(".paypal.com"))


def _fetch_certificate(cert_url: str) -> str:
    """下载 PayPal 签名证书（PEM），进程内缓存。"""
    if cert_url in _cert_cache:
        return _cert_cache[cert_url]
    with httpx.Client(timeout=30) as client:
        resp = client.get(cert_url)
        resp.raise_for_status()
    _cert_cache[cert_url] = resp.text
    return resp.text


def verify_paypal_signature(headers, body: bytes, webhook_id: str) -> bool:
    """
    离线校验 PayPal webhook 签名。

    Args:
        headers: 请求头（大小写不敏感的映射，如 starlette Headers）。
        body: 原始请求体。
        webhook_id: 后台配置的 PayPal webhook ID，未配置时一律拒绝。
    """
    if not webhook_id:
        logger.error("PayPal webhook_id 未配置，拒绝通知")
        return False

    transmission_id = headers.get("paypal-transmission-id")
    transmission_time = headers.get("paypal-transmission-time")
    transmission_sig = headers.get("paypal-transmission-sig")
    cert_url = headers.get("paypal-cert-url")
    auth_algo = headers.get("paypal-auth-algo") or "SHA256withRSA"

    if not all((transmission_id, transmission_time, transmission_sig, cert_url)):
        return False
    if auth_algo.upper() != "SHA256WITHRSA":
        logger.warning("PayPal webhook 签名算法不支持: %s", auth_algo)
        return False
    if not _is_paypal_cert_url(cert_url):
        logger.warning("PayPal 证书地址不可信: %s", cert_url)
        return False

    try:
        cert_pem = _fetch_certificate(cert_url)
        public_key = RSA.import_key(cert_pem)
    except (httpx.HTTPError, ValueError, IndexError) as e:
        logger.error("PayPal 证书加载失败: %s", e)
        return False

    message = build_paypal_transmission_string(transmission_id, transmission_time, webhook_id, body)
    h = SHA256.new(message.encode("utf-8"))
    try:
        signature = base64.b64decode(transmission_sig)
        pkcs1_15.new(public_key).verify(h, signature)
        return True
    except (ValueError, TypeError, binascii.Error):
        return False
