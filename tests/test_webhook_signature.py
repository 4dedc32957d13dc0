"""Webhook 签名校验单元测试。"""

import base64
import zlib
from unittest.mock import patch

from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

from app.services.webhook_signature import (
    build_paypal_transmission_string,
    generate_mercadopago_signature,
    generate_paystack_signature,
    generate_square_signature,
    parse_mercadopago_signature,
    verify_mercadopago_signature,
    verify_paypal_signature,
    verify_paystack_signature,
    verify_square_signature,
)

BODY = b'{"event":"charge.success","data":{"reference":"vxl_1_abc"}}'


def _flip_last_byte(data: bytes) -> bytes:
    return data[:-1] + bytes([data[-1] ^ 0x01])


# ── Mercado Pago ──


class TestMercadoPagoSignature:
    """x-signature: ts=...,v1=...。"""

    def _header(self, data_id="123", request_id="req-1", ts="1700000000", secret="mp-secret"):
        v1 = generate_mercadopago_signature(data_id, request_id, ts, secret)
        return f"ts={ts},v1={v1}"

    def test_valid_signature(self):
        assert verify_mercadopago_signature(self._header(), "req-1", "123", "mp-secret")

    def test_tampered_v1_rejected(self):
        header = self._header()
        tampered = header[:-1] + ("0" if header[-1] != "0" else "1")
        assert not verify_mercadopago_signature(tampered, "req-1", "123", "mp-secret")

    def test_other_data_id_rejected(self):
        assert not verify_mercadopago_signature(self._header(), "req-1", "124", "mp-secret")

    def test_missing_parts_rejected(self):
        assert not verify_mercadopago_signature("ts=1700000000", "req-1", "123", "mp-secret")
        assert not verify_mercadopago_signature(None, "req-1", "123", "mp-secret")

    def test_no_secret_accepts_all(self):
        """未配置密钥时接受所有通知。"""
        assert verify_mercadopago_signature(None, None, None, "")

    def test_parse_header_with_spaces(self):
        assert parse_mercadopago_signature(" ts = 1 , v1 = abc ") == ("1", "abc")


# ── Paystack ──


class TestPaystackSignature:
    def test_valid_signature(self):
        sig = generate_paystack_signature(BODY, "sk_test")
        assert verify_paystack_signature(BODY, sig, "sk_test")

    def test_body_byte_flip_rejected(self):
        sig = generate_paystack_signature(BODY, "sk_test")
        assert not verify_paystack_signature(_flip_last_byte(BODY), sig, "sk_test")

    def test_missing_header_rejected(self):
        assert not verify_paystack_signature(BODY, None, "sk_test")

    def test_no_secret_accepts_all(self):
        assert verify_paystack_signature(BODY, None, "")


# ── Square ──


class TestSquareSignature:
    URL = "https://shop.example.com/v1/webhooks/square"

    def test_valid_signature(self):
        sig = generate_square_signature(self.URL, BODY, "sq-key")
        assert verify_square_signature(BODY, sig, "sq-key", self.URL)

    def test_url_is_part_of_signature(self):
        sig = generate_square_signature(self.URL, BODY, "sq-key")
        assert not verify_square_signature(BODY, sig, "sq-key", self.URL + "/other")

    def test_body_byte_flip_rejected(self):
        sig = generate_square_signature(self.URL, BODY, "sq-key")
        assert not verify_square_signature(_flip_last_byte(BODY), sig, "sq-key", self.URL)

    def test_no_key_accepts_all(self):
        assert verify_square_signature(BODY, None, "", self.URL)


# ── PayPal ──


_RSA_KEY = RSA.generate(1024)
_CERT_URL = "https://api.paypal.com/v1/notifications/certs/CERT-1"


def _paypal_headers(body: bytes, webhook_id: str = "WH-1", cert_url: str = _CERT_URL) -> dict:
    message = build_paypal_transmission_string("tx-1", "2026-01-01T00:00:00Z", webhook_id, body)
    signature = pkcs1_15.new(_RSA_KEY).sign(SHA256.new(message.encode("utf-8")))
    return {
        "paypal-transmission-id": "tx-1",
        "paypal-transmission-time": "2026-01-01T00:00:00Z",
        "paypal-transmission-sig": base64.b64encode(signature).decode("utf-8"),
        "paypal-cert-url": cert_url,
        "paypal-auth-algo": "SHA256withRSA",
    }


class TestPayPalSignature:
    """SHA256withRSA 离线校验，证书下载被 mock。"""

    def test_transmission_string_uses_crc32(self):
        expected = f"a|b|WH|{zlib.crc32(BODY) & 0xFFFFFFFF}"
        assert build_paypal_transmission_string("a", "b", "WH", BODY) == expected

    @patch("app.services.webhook_signature._fetch_certificate")
    def test_valid_signature(self, mock_fetch):
        mock_fetch.return_value = _RSA_KEY.publickey().export_key().decode("utf-8")
        assert verify_paypal_signature(_paypal_headers(BODY), BODY, "WH-1")
        mock_fetch.assert_called_once_with(_CERT_URL)

    @patch("app.services.webhook_signature._fetch_certificate")
    def test_body_byte_flip_rejected(self, mock_fetch):
        mock_fetch.return_value = _RSA_KEY.publickey().export_key().decode("utf-8")
        headers = _paypal_headers(BODY)
        assert not verify_paypal_signature(headers, _flip_last_byte(BODY), "WH-1")

    @patch("app.services.webhook_signature._fetch_certificate")
    def test_other_webhook_id_rejected(self, mock_fetch):
        mock_fetch.return_value = _RSA_KEY.publickey().export_key().decode("utf-8")
        assert not verify_paypal_signature(_paypal_headers(BODY), BODY, "WH-2")

    @patch("app.services.webhook_signature._fetch_certificate")
    def test_untrusted_cert_host_rejected(self, mock_fetch):
        headers = _paypal_headers(BODY, cert_url="https://evil.example.com/cert.pem")
        assert not verify_paypal_signature(headers, BODY, "WH-1")
        mock_fetch.assert_not_called()

    def test_missing_webhook_id_rejects(self):
        """与其他渠道不同：未配置 webhook_id 时拒绝。"""
        assert not verify_paypal_signature(_paypal_headers(BODY), BODY, "")

    def test_missing_headers_rejected(self):
        headers = _paypal_headers(BODY)
        del headers["paypal-transmission-sig"]
        assert not verify_paypal_signature(headers, BODY, "WH-1")
