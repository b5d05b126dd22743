"""
Factory for creating payment gateway adapters based on configuration.
"""
import logging

from app.core.config import settings as app_settings
from app.services.circuit_breaker import get_circuit_breaker
from app.services.payment_gateway.alipay import AlipayGateway
from app.services.payment_gateway.base import PaymentGateway

logger = logging.getLogger(__name__)


class PaymentGatewayFactory:
    """Factory for creating payment gateway adapters."""

    PROVIDERS = {
        "alipay": AlipayGateway,
    }

    @classmethod
    def create(cls, provider_name: str, config: dict) -> PaymentGateway:
        """
        Create gateway instance by name.

        Raises:
            ValueError: If provider name is unknown
        """
        provider_class = cls.PROVIDERS.get(provider_name.lower())
        if not provider_class:
            available = ", ".join(cls.PROVIDERS.keys())
            raise ValueError(
                f"Unknown payment provider: {provider_name}. "
                f"Available providers: {available}"
            )

        logger.info("payment_gateway_created", extra={"provider": provider_name})
        gateway = provider_class(config, breaker=get_circuit_breaker("payment_gateway"))
        if not gateway.is_available():
            logger.warning("payment_gateway_not_configured", extra={"provider": provider_name})
        return gateway

    @classmethod
    def create_from_settings(cls, settings) -> PaymentGateway:
        provider_name = settings.payment_provider
        if provider_name == "alipay":
            config = {
                "gateway_url": settings.alipay_gateway_url,
                "app_id": settings.alipay_app_id,
                "private_key": settings.alipay_private_key,
                "public_key": settings.alipay_public_key,
                "notify_url": settings.alipay_notify_url,
                "subject": settings.payment_subject,
                "timeout": settings.payment_gateway_timeout,
                "timeout_minutes": settings.handoff_ttl_seconds // 60,
            }
        else:
            raise ValueError(f"Payment provider {provider_name} not supported in settings")
        return cls.create(provider_name, config)


_gateway: PaymentGateway | None = None


def get_payment_gateway() -> PaymentGateway:
    """Process-wide gateway built from settings (keys are parsed once)."""
    global _gateway
    if _gateway is None:
        _gateway = PaymentGatewayFactory.create_from_settings(app_settings)
    return _gateway
