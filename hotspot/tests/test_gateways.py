"""
Tests for the payment gateway registry
"""

from decimal import Decimal

from django.test import SimpleTestCase

from hotspot.exceptions import ConfigurationError
from hotspot.gateways import (
    GatewayProvider,
    GatewayRegistry,
    ManualGateway,
    PaymentGateway,
    PaymentInitResult,
    PaymentRequest,
    PaymentStatus,
    VerificationResult,
)


class StubCollectGateway(PaymentGateway):
    provider = GatewayProvider.COLLECTUG

    def initialize(self, request):
        return PaymentInitResult(success=True, transaction_id="COL-1", redirect_url="https://pay.example/1")

    def verify(self, transaction_id):
        return VerificationResult(status=PaymentStatus.COMPLETED)

    def refund(self, transaction_id, amount):
        return False


class GatewayRegistryTest(SimpleTestCase):
    def test_manual_gateway_loaded(self):
        registry = GatewayRegistry.from_config({"manual": {}})
        gateway = registry.get("manual")
        self.assertIsInstance(gateway, ManualGateway)
        self.assertEqual(registry.providers, [GatewayProvider.MANUAL])

    def test_unknown_provider_fails_at_startup(self):
        with self.assertRaises(ConfigurationError):
            GatewayRegistry.from_config({"bitpay": {}})

    def test_missing_credentials_fail_at_startup(self):
        with self.assertRaises(ConfigurationError) as ctx:
            GatewayRegistry.from_config(
                {"collectug": {"api_key": "k"}}, factories={GatewayProvider.COLLECTUG: StubCollectGateway}
            )
        self.assertIn("base_url", str(ctx.exception))

    def test_provider_without_implementation(self):
        with self.assertRaises(ConfigurationError):
            GatewayRegistry.from_config({"stripe": {"api_key": "sk"}})

    def test_injected_factory(self):
        registry = GatewayRegistry.from_config(
            {"collectug": {"api_key": "k", "base_url": "https://collect.example"}},
            factories={GatewayProvider.COLLECTUG: StubCollectGateway},
        )
        gateway = registry.get(GatewayProvider.COLLECTUG)
        self.assertEqual(gateway.config["base_url"], "https://collect.example")

    def test_disabled_provider_lookup(self):
        registry = GatewayRegistry.from_config({"manual": {}})
        with self.assertRaises(ConfigurationError):
            registry.get(GatewayProvider.PAYPAL)
        with self.assertRaises(ConfigurationError):
            registry.get("nonsense")


class ManualGatewayTest(SimpleTestCase):
    def setUp(self):
        self.gateway = ManualGateway({})

    def test_initialize_requires_confirmation(self):
        request = PaymentRequest(tenant_id="t", amount=Decimal("500"), currency="UGX", package="daily")
        result = self.gateway.initialize(request)
        self.assertTrue(result.success)
        self.assertTrue(result.requires_manual_confirmation)
        self.assertTrue(result.transaction_id.startswith("MAN-"))

    def test_verify_stays_pending(self):
        self.assertEqual(self.gateway.verify("MAN-1").status, PaymentStatus.PENDING)

    def test_currencies(self):
        self.assertTrue(self.gateway.supports_currency("ugx"))
        self.assertFalse(self.gateway.supports_currency("EUR"))
        limited = ManualGateway({"supported_currencies": ["TZS"]})
        self.assertEqual(limited.supported_currencies(), ["TZS"])
