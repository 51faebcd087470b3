"""
Payment gateway capability.

Providers are keyed by ``GatewayProvider`` and resolved once at startup into
a ``GatewayRegistry`` that is injected wherever payments are initiated,
verified or refunded. Provider-specific protocol clients plug in through
the ``factories`` argument of ``GatewayRegistry.from_config``; the built-in
``ManualGateway`` covers cash and agent sales confirmed by an operator.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class GatewayProvider(str, Enum):
    MANUAL = "manual"
    COLLECTUG = "collectug"
    FLUTTERWAVE = "flutterwave"
    STRIPE = "stripe"
    PAYPAL = "paypal"


# Configuration keys each provider cannot run without
REQUIRED_FIELDS: Dict[GatewayProvider, List[str]] = {
    GatewayProvider.MANUAL: [],
    GatewayProvider.COLLECTUG: ["api_key", "base_url"],
    GatewayProvider.FLUTTERWAVE: ["secret_key", "public_key"],
    GatewayProvider.STRIPE: ["api_key"],
    GatewayProvider.PAYPAL: ["client_id", "client_secret"],
}


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PaymentRequest:
    tenant_id: str
    amount: Decimal
    currency: str
    package: str
    customer_phone: str = ""
    description: str = ""
    device_id: Optional[int] = None
    callback_url: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentInitResult:
    success: bool
    transaction_id: str
    reference: str = ""
    redirect_url: Optional[str] = None
    requires_manual_confirmation: bool = False
    message: str = ""
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationResult:
    status: PaymentStatus
    reference: str = ""
    message: str = ""
    raw: dict = field(default_factory=dict)


class PaymentGateway(ABC):
    provider: GatewayProvider

    def __init__(self, config: dict):
        self.config = config or {}

    @abstractmethod
    def initialize(self, request: PaymentRequest) -> PaymentInitResult:
        """Start a payment. Network failures raise ConnectivityError."""

    @abstractmethod
    def verify(self, transaction_id: str) -> VerificationResult:
        """Ask the provider for the authoritative payment status."""

    @abstractmethod
    def refund(self, transaction_id: str, amount: Decimal) -> bool:
        """Refund ``amount``. Returns False if the provider declined."""

    def supported_currencies(self) -> List[str]:
        return list(self.config.get("supported_currencies", []))

    def supports_currency(self, currency: str) -> bool:
        supported = self.supported_currencies()
        return not supported or currency.upper() in supported


class ManualGateway(PaymentGateway):
    """
    Cash/agent payments. Nothing is sent anywhere: the payment stays pending
    until an operator confirms it, after which it follows the normal
    completion path.
    """

    provider = GatewayProvider.MANUAL

    def initialize(self, request):
        transaction_id = f"MAN-{uuid.uuid4().hex[:12].upper()}"
        return PaymentInitResult(
            success=True,
            transaction_id=transaction_id,
            reference=transaction_id,
            requires_manual_confirmation=True,
            message="Awaiting operator confirmation",
        )

    def verify(self, transaction_id):
        return VerificationResult(
            status=PaymentStatus.PENDING,
            message="Manual payments are confirmed by an operator",
        )

    def refund(self, transaction_id, amount):
        logger.info(f"Manual refund of {amount} recorded for {transaction_id}")
        return True

    def supported_currencies(self):
        return list(self.config.get("supported_currencies", ["UGX", "TZS", "KES", "USD"]))


GatewayFactory = Callable[[dict], PaymentGateway]

BUILTIN_FACTORIES: Dict[GatewayProvider, GatewayFactory] = {
    GatewayProvider.MANUAL: ManualGateway,
}


class GatewayRegistry:
    """Enabled gateways, keyed by provider"""

    def __init__(self, gateways: Dict[GatewayProvider, PaymentGateway]):
        self._gateways = dict(gateways)

    @classmethod
    def from_config(
        cls,
        gateways_config: Dict[str, dict],
        factories: Optional[Dict[GatewayProvider, GatewayFactory]] = None,
    ) -> "GatewayRegistry":
        """
        Resolve every configured provider now, so a bad key or missing
        credential fails at startup rather than on the first payment.
        """
        available = {**BUILTIN_FACTORIES, **(factories or {})}
        gateways = {}
        for key, provider_config in (gateways_config or {}).items():
            try:
                provider = GatewayProvider(str(key).lower())
            except ValueError:
                raise ConfigurationError(f"Unknown payment gateway provider '{key}'") from None

            provider_config = provider_config or {}
            missing = [
                name for name in REQUIRED_FIELDS[provider] if not provider_config.get(name)
            ]
            if missing:
                raise ConfigurationError(
                    f"Gateway '{provider.value}' is missing required configuration: {', '.join(missing)}"
                )

            factory = available.get(provider)
            if factory is None:
                raise ConfigurationError(
                    f"No implementation registered for gateway '{provider.value}'"
                )
            gateways[provider] = factory(provider_config)

        logger.info(
            f"Loaded payment gateways: {', '.join(p.value for p in gateways) or 'none'}"
        )
        return cls(gateways)

    def get(self, provider) -> PaymentGateway:
        try:
            provider = GatewayProvider(provider)
        except ValueError:
            raise ConfigurationError(f"Unknown payment gateway provider '{provider}'") from None
        gateway = self._gateways.get(provider)
        if gateway is None:
            raise ConfigurationError(f"Payment gateway '{provider.value}' is not enabled")
        return gateway

    @property
    def providers(self) -> List[GatewayProvider]:
        return list(self._gateways)
