"""
钱包充值流程：发起 → 渠道托管收银台 → 成功回跳核验入账 / 取消。

- 发起时只写待处理充值记录（transient，1 小时过期），不入账
- 成功回跳先原子占位 processing，再向渠道核验，核验通过后入账、
  写一条已完成的充值订单用于对账，最后删除待处理记录
- 同一充值重复回跳只入账一次；记录删除后通过充值订单的 wallet.deposit_id 识别
"""

import logging
import uuid
from datetime import datetime, timezone
from urllib.parse import urlencode

from app.models.schemas import Order, OrderStatus, PendingDeposit
from app.services.errors import NotFoundError, ValidationError
from app.services.mercadopago_client import MercadoPagoClient
from app.services.money import to_decimal, to_minor_units
from app.services.order_service import OrderService
from app.services.paypal_client import PayPalClient
from app.services.paystack_client import PaystackClient
from app.services.platform_config import (
    get_public_base_url,
    load_mercadopago_settings,
    load_paypal_settings,
    load_paystack_settings,
    load_stripe_settings,
)
from app.services.stripe_client import StripeClient
from app.services.transients import (
    claim_flag,
    delete_transient,
    get_transient,
    release_flag,
    set_transient,
    update_transient,
)
from app.services.user_service import UserService
from app.services.wallet_service import WalletService, format_amount, get_site_currency

logger = logging.getLogger(__name__)

DEPOSIT_TTL = 3600
DEPOSIT_KEY_PREFIX = "wallet_deposit_"
DEPOSIT_PAYMENT_METHOD = "wallet_deposit"

# 充值渠道优先级：第一个已配置的渠道生效
GATEWAY_PRIORITY = ("stripe", "paypal", "paystack", "mercadopago")


def get_active_gateway() -> str | None:
    if load_stripe_settings().api_key:
        return "stripe"
    if load_paypal_settings().enabled:
        return "paypal"
    if load_paystack_settings().enabled:
        return "paystack"
    if load_mercadopago_settings().enabled:
        return "mercadopago"
    return None


def _deposit_key(deposit_id: str) -> str:
    return f"{DEPOSIT_KEY_PREFIX}{deposit_id}"


def get_pending_deposit(deposit_id: str) -> PendingDeposit | None:
    data = get_transient(_deposit_key(deposit_id))
    return PendingDeposit.from_dict(data) if data else None


class DepositService:
    """钱包充值编排。clients 可按渠道注入客户端实例。"""

    def __init__(self, clients: dict | None = None):
        self._clients = dict(clients or {})
        self.wallet = WalletService()
        self.orders = OrderService()

    def get_client(self, gateway: str):
        if gateway not in self._clients:
            factories = {
                "stripe": lambda: StripeClient(load_stripe_settings()),
                "paypal": lambda: PayPalClient(load_paypal_settings()),
                "paystack": lambda: PaystackClient(load_paystack_settings()),
                "mercadopago": lambda: MercadoPagoClient(load_mercadopago_settings()),
            }
            if gateway not in factories:
                raise ValidationError(f"Unsupported payment gateway: {gateway}")
            self._clients[gateway] = factories[gateway]()
        return self._clients[gateway]

    # ── URL ───────────────────────────────────────────────

    @staticmethod
    def success_url(deposit_id: str, gateway: str) -> str:
        query = urlencode({"deposit_id": deposit_id, "gateway": gateway})
        return f"{get_public_base_url()}/v1/wallet/deposit/success?{query}"

    @staticmethod
    def cancel_url(deposit_id: str) -> str:
        return f"{get_public_base_url()}/v1/wallet/deposit/cancel?{urlencode({'deposit_id': deposit_id})}"

    @staticmethod
    def result_redirect(success: bool, message: str, return_url: str = "") -> str:
        """充值结束后的跳转地址：优先使用发起时传入的 return_url。"""
        target = return_url or f"{get_public_base_url()}/wallet"
        separator = "&" if "?" in target else "?"
        query = urlencode({"wallet_deposit": "success" if success else "failed", "wallet_message": message})
        return f"{target}{separator}{query}"

    # ── 发起 ──────────────────────────────────────────────

    def initiate(self, user_id: int, amount, return_url: str = "") -> dict:
        """
        发起充值，返回 {"success": True, "redirect_url", "deposit_id"}。

        Raises:
            ValidationError: 钱包未启用、金额不合法或没有可用渠道。
            NotFoundError: 用户不存在。
        """
        if not self.wallet.is_enabled():
            raise ValidationError("Wallet feature is not available")
        user = UserService().get_user(user_id)
        if not user:
            raise NotFoundError(f"用户 id={user_id} 不存在")

        validation = self.wallet.validate_deposit_amount(amount)
        if not validation["valid"]:
            raise ValidationError(validation["error"])
        gateway = get_active_gateway()
        if not gateway:
            raise ValidationError("No payment gateway configured")

        deposit = PendingDeposit(
            deposit_id=uuid.uuid4().hex,
            user_id=user_id,
            amount=to_decimal(amount),
            currency=get_site_currency(),
            gateway=gateway,
            return_url=return_url or "",
            created_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
        )
        key = _deposit_key(deposit.deposit_id)
        set_transient(key, deposit.to_dict(), DEPOSIT_TTL)

        try:
            gateway_ref, redirect_url = getattr(self, f"_create_{gateway}")(deposit, user.email)
        except Exception as e:
            delete_transient(key)
            logger.error("充值发起失败: user_id=%d, gateway=%s, %s", user_id, gateway, e)
            return {"success": False, "message": str(e)}

        deposit.gateway_ref = gateway_ref
        update_transient(key, deposit.to_dict())
        logger.info(
            "充值已发起: deposit_id=%s, user_id=%d, amount=%s, gateway=%s",
            deposit.deposit_id, user_id, deposit.amount, gateway,
        )
        return {"success": True, "redirect_url": redirect_url, "deposit_id": deposit.deposit_id}

    def _create_stripe(self, deposit: PendingDeposit, email: str | None) -> tuple[str, str]:
        result = self.get_client("stripe").create_deposit_session(
            deposit.deposit_id,
            deposit.amount,
            deposit.currency,
            self.success_url(deposit.deposit_id, "stripe"),
            self.cancel_url(deposit.deposit_id),
            customer_email=email,
        ).raise_for_error()
        return result.data["id"], result.data["url"]

    def _create_paypal(self, deposit: PendingDeposit, email: str | None) -> tuple[str, str]:
        order_data = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": deposit.deposit_id,
                "custom_id": deposit.deposit_id,
                "description": "Wallet Deposit",
                "amount": {
                    "currency_code": deposit.currency,
                    "value": PayPalClient.to_paypal_amount(deposit.amount),
                },
            }],
            "application_context": {
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
                "return_url": self.success_url(deposit.deposit_id, "paypal"),
                "cancel_url": self.cancel_url(deposit.deposit_id),
            },
        }
        result = self.get_client("paypal").create_order(
            order_data, request_id=f"deposit-{deposit.deposit_id}",
        ).raise_for_error()
        approval_url = PayPalClient.find_link(result.data.get("links"), "approve")
        if not approval_url:
            raise ValueError("PayPal approval URL not found")
        return result.data["id"], approval_url

    def _create_paystack(self, deposit: PendingDeposit, email: str | None) -> tuple[str, str]:
        if not email:
            raise ValueError("Email is required for Paystack payments")
        result = self.get_client("paystack").initialize_transaction({
            "email": email,
            "amount": PaystackClient.to_paystack_amount(deposit.amount),
            "currency": deposit.currency,
            "reference": deposit.deposit_id,
            "callback_url": self.success_url(deposit.deposit_id, "paystack"),
            "metadata": {"wallet_deposit": True, "deposit_id": deposit.deposit_id, "user_id": deposit.user_id},
        }).raise_for_error()
        return result.data.get("reference") or deposit.deposit_id, result.data["authorization_url"]

    def _create_mercadopago(self, deposit: PendingDeposit, email: str | None) -> tuple[str, str]:
        client = self.get_client("mercadopago")
        success_url = self.success_url(deposit.deposit_id, "mercadopago")
        preference = {
            "items": [{
                "title": "Wallet Deposit",
                "quantity": 1,
                "unit_price": MercadoPagoClient.to_mercadopago_amount(deposit.amount),
                "currency_id": deposit.currency,
            }],
            "back_urls": {
                "success": success_url,
                "failure": self.cancel_url(deposit.deposit_id),
                "pending": success_url,
            },
            "auto_return": "approved",
            "external_reference": deposit.deposit_id,
            "metadata": {"wallet_deposit": "true", "deposit_id": deposit.deposit_id, "user_id": deposit.user_id},
        }
        if email:
            preference["payer"] = {"email": email}
        result = client.create_preference(preference).raise_for_error()
        if client.settings.mode == "sandbox":
            url = result.data.get("sandbox_init_point") or result.data.get("init_point")
        else:
            url = result.data.get("init_point")
        if not url:
            raise ValueError("Mercado Pago checkout URL not found")
        return result.data.get("id"), url

    # ── 成功回跳 ──────────────────────────────────────────

    def complete(self, deposit_id: str, params: dict | None = None) -> dict:
        """
        核验并入账。

        Returns:
            {"success", "message", "return_url", "already_processed"}
        """
        params = params or {}
        key = _deposit_key(deposit_id)
        deposit = get_pending_deposit(deposit_id)
        if deposit is None:
            audit = self.orders.find_by_ref("wallet.deposit_id", deposit_id)
            if audit and audit.get_details("wallet.credited"):
                return self._already_processed(audit.get_details("wallet.return_url") or "")
            raise NotFoundError("Deposit not found")

        if deposit.processed or not claim_flag(key, "processing"):
            return self._already_processed(deposit.return_url)

        try:
            transaction_id = self._verify(deposit, params)
        except Exception as e:
            logger.error("充值核验异常: deposit_id=%s, %s", deposit_id, e)
            transaction_id = None
        if not transaction_id:
            release_flag(key, "processing")
            logger.warning("充值核验未通过: deposit_id=%s, gateway=%s", deposit_id, deposit.gateway)
            return {
                "success": False,
                "message": "Payment verification failed",
                "return_url": deposit.return_url,
                "already_processed": False,
            }

        result = self.wallet.credit(deposit.user_id, deposit.amount, {
            "type": "deposit",
            "gateway": deposit.gateway,
            "gateway_transaction_id": transaction_id,
            "description": f"Wallet deposit via {deposit.gateway.capitalize()}",
        })
        self._record_deposit_order(deposit, transaction_id, result["transaction_id"])

        deposit.processed = True
        update_transient(key, deposit.to_dict())
        delete_transient(key)
        logger.info(
            "充值已入账: deposit_id=%s, user_id=%d, amount=%s", deposit_id, deposit.user_id, deposit.amount,
        )
        return {
            "success": True,
            "message": f"{format_amount(to_minor_units(deposit.amount), deposit.currency)} has been added to your wallet!",
            "return_url": deposit.return_url,
            "already_processed": False,
        }

    @staticmethod
    def _already_processed(return_url: str) -> dict:
        return {
            "success": True,
            "message": "Funds already added to your wallet",
            "return_url": return_url,
            "already_processed": True,
        }

    def _record_deposit_order(self, deposit: PendingDeposit, transaction_id: str, wallet_tx_id: int) -> Order:
        """写一条已完成的充值订单，用于对账。"""
        order = self.orders.create_order(
            customer_id=deposit.user_id,
            payment_method=DEPOSIT_PAYMENT_METHOD,
            items=[{"label": "Wallet Deposit", "amount": deposit.amount, "quantity": 1}],
            currency=deposit.currency,
            status=OrderStatus.COMPLETED.value,
        )
        order.set_transaction_id(transaction_id)
        order.set_details("wallet.is_deposit", True)
        order.set_details("wallet.deposit_id", deposit.deposit_id)
        order.set_details("wallet.return_url", deposit.return_url)
        order.set_details("wallet.credited", True)
        order.set_details("wallet.credited_at", datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"))
        order.set_details("wallet.transaction_id", wallet_tx_id)
        order.set_details("payment.gateway", deposit.gateway)
        order.set_details("pricing.total", str(deposit.amount))
        return self.orders.save(order)

    # ── 渠道核验 ──────────────────────────────────────────

    def _verify(self, deposit: PendingDeposit, params: dict) -> str | None:
        """向渠道核验付款，通过时返回渠道交易号。"""
        verifier = getattr(self, f"_verify_{deposit.gateway}", None)
        if verifier is None:
            return None
        return verifier(deposit, params)

    def _verify_stripe(self, deposit: PendingDeposit, params: dict) -> str | None:
        if not deposit.gateway_ref:
            return None
        result = self.get_client("stripe").retrieve_session(deposit.gateway_ref)
        if not result.success or result.data.get("payment_status") != "paid":
            return None
        amount_total = result.data.get("amount_total")
        if amount_total is not None and int(amount_total) != to_minor_units(deposit.amount):
            logger.error("Stripe 充值金额不符: deposit_id=%s, %s", deposit.deposit_id, amount_total)
            return None
        return result.data.get("payment_intent") or deposit.gateway_ref

    def _verify_paypal(self, deposit: PendingDeposit, params: dict) -> str | None:
        if not deposit.gateway_ref:
            return None
        client = self.get_client("paypal")
        result = client.capture_order(deposit.gateway_ref, request_id=f"deposit-capture-{deposit.deposit_id}")
        if not result.success:
            # 可能已在上一次回跳中扣款
            existing = client.get_order(deposit.gateway_ref)
            if existing.success and (existing.data or {}).get("status") == "COMPLETED":
                return deposit.gateway_ref
            return None
        paypal_order = result.data or {}
        if paypal_order.get("status") != "COMPLETED":
            return None
        units = paypal_order.get("purchase_units") or [{}]
        captures = (units[0].get("payments") or {}).get("captures") or []
        return captures[0].get("id") if captures else deposit.gateway_ref

    def _verify_paystack(self, deposit: PendingDeposit, params: dict) -> str | None:
        reference = params.get("reference") or params.get("trxref") or deposit.gateway_ref
        if not reference:
            return None
        result = self.get_client("paystack").verify_transaction(reference)
        if not result.success or (result.data or {}).get("status") != "success":
            return None
        amount = result.data.get("amount")
        if amount is not None and int(amount) != to_minor_units(deposit.amount):
            logger.error("Paystack 充值金额不符: deposit_id=%s, %s", deposit.deposit_id, amount)
            return None
        return result.data.get("reference") or reference

    def _verify_mercadopago(self, deposit: PendingDeposit, params: dict) -> str | None:
        payment_id = params.get("payment_id") or params.get("collection_id")
        if not payment_id:
            return None
        result = self.get_client("mercadopago").get_payment(payment_id)
        if not result.success:
            return None
        payment = result.data or {}
        if payment.get("status") != "approved":
            return None
        if payment.get("external_reference") != deposit.deposit_id:
            logger.error("Mercado Pago 充值关联号不符: deposit_id=%s, payment_id=%s", deposit.deposit_id, payment_id)
            return None
        return str(payment_id)

    # ── 取消 ──────────────────────────────────────────────

    def cancel(self, deposit_id: str) -> dict:
        deposit = get_pending_deposit(deposit_id) if deposit_id else None
        if deposit_id:
            delete_transient(_deposit_key(deposit_id))
        return {
            "success": False,
            "message": "Deposit was cancelled",
            "return_url": deposit.return_url if deposit else "",
        }


def maybe_credit_wallet_deposit(order: Order) -> dict | None:
    """
    订单完成后，若为钱包充值订单且尚未入账则入账。

    入账前原子占位 wallet.credited，Webhook 与回跳并发时只有一方入账；
    入账失败时释放占位。

    返回入账结果；不是充值订单或已入账时返回 None。
    """
    if not order.get_details("wallet.is_deposit"):
        return None
    order_service = OrderService()
    # 以数据库中的最新状态为准
    current = order_service.get_order(order.id) or order
    if current.get_details("wallet.credited"):
        return None
    if current.status != OrderStatus.COMPLETED.value or not current.customer_id:
        return None

    amount = to_decimal(current.get_details("pricing.total") or current.get_total())
    if amount <= 0:
        return None
    if not order_service.claim_flag(order.id, "wallet.credited", (OrderStatus.COMPLETED.value,)):
        logger.info("充值订单已由其他请求入账: order_id=%d", order.id)
        return None

    gateway = current.get_details("payment.gateway") or current.payment_method.split("_")[0]
    try:
        result = WalletService().credit(current.customer_id, amount, {
            "type": "deposit",
            "reference_type": "order",
            "reference_id": current.id,
            "gateway": gateway,
            "gateway_transaction_id": current.transaction_id,
            "description": f"Wallet deposit via {gateway.capitalize()} (Order #{current.id})",
        })
    except Exception:
        order_service.release_flag(order.id, "wallet.credited")
        raise
    order.set_details("wallet.credited", True)
    order.set_details("wallet.credited_at", datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"))
    order.set_details("wallet.transaction_id", result["transaction_id"])
    order_service.save(order)
    logger.info("充值订单已入账: order_id=%d, amount=%s", order.id, amount)
    return result
