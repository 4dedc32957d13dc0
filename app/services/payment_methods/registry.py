"""
支付方式注册表：支付方式键 → 实现类。
"""

from typing import Type

from app.models.schemas import Order
from app.services.errors import ValidationError
from app.services.payment_methods.base import PaymentMethod
from app.services.payment_methods.mercadopago import MercadoPagoPayment, MercadoPagoSubscription
from app.services.payment_methods.offline import OfflinePayment, OfflineSubscription
from app.services.payment_methods.paypal import PayPalPayment, PayPalSubscription
from app.services.payment_methods.paystack import PaystackPayment, PaystackSubscription
from app.services.payment_methods.square import SquarePayment, SquareSubscription
from app.services.payment_methods.wallet import WalletPayment


class PaymentMethodRegistry:
    """按键创建支付方式实例，支持运行时注册新的实现。"""

    _methods: dict[str, Type[PaymentMethod]] = {
        cls.key: cls
        for cls in (
            PayPalPayment,
            PayPalSubscription,
            MercadoPagoPayment,
            MercadoPagoSubscription,
            PaystackPayment,
            PaystackSubscription,
            SquarePayment,
            SquareSubscription,
            OfflinePayment,
            OfflineSubscription,
            WalletPayment,
        )
    }

    @classmethod
    def register(cls, key: str, method_class: Type[PaymentMethod]) -> None:
        cls._methods[key] = method_class

    @classmethod
    def available(cls) -> list[str]:
        return list(cls._methods.keys())

    @classmethod
    def get_class(cls, key: str) -> Type[PaymentMethod]:
        if key not in cls._methods:
            raise ValidationError(f"未知的支付方式: {key}")
        return cls._methods[key]

    @classmethod
    def for_provider(cls, provider: str, subscription: bool = False) -> Type[PaymentMethod]:
        key = f"{provider}_{'subscription' if subscription else 'payment'}"
        return cls.get_class(key)


def get_payment_method(order: Order, settings=None, client=None) -> PaymentMethod:
    """按订单的支付方式键创建支付方式实例。"""
    method_class = PaymentMethodRegistry.get_class(order.payment_method)
    return method_class(order, settings=settings, client=client)
