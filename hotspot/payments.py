"""
Payment service: initiate, verify, confirm, fail and refund payments through
the gateway registry. Completion always goes through the reconciliation
coordinator so voucher issuance stays exactly-once.
"""

import logging
from decimal import Decimal

from django.db import transaction

from .exceptions import ConfigurationError, InvalidStateError
from .gateways import GatewayProvider, GatewayRegistry, PaymentRequest, PaymentStatus
from .models import Payment

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(self, repositories, gateways: GatewayRegistry, coordinator, vouchers):
        self.repos = repositories
        self.gateways = gateways
        self.coordinator = coordinator
        self.vouchers = vouchers

    def initiate(self, tenant_id, request: PaymentRequest, provider=GatewayProvider.MANUAL) -> Payment:
        gateway = self.gateways.get(provider)
        if not gateway.supports_currency(request.currency):
            raise ConfigurationError(
                f"Gateway '{gateway.provider.value}' does not support {request.currency}"
            )
        if request.device_id is not None:
            self.repos.devices.get(tenant_id, request.device_id)

        result = gateway.initialize(request)
        payment = self.repos.payments.create(
            tenant_id,
            transaction_id=result.transaction_id,
            reference=result.reference,
            provider=gateway.provider.value,
            amount=Decimal(str(request.amount)),
            currency=request.currency.upper(),
            device_id=request.device_id,
            customer_phone=request.customer_phone,
            gateway_response=dict(result.raw),
            metadata={
                **request.metadata,
                "package": request.package,
                "redirect_url": result.redirect_url,
                "requires_manual_confirmation": result.requires_manual_confirmation,
            },
            audit_trail=[],
        )
        payment.add_audit_entry("initiated", provider=gateway.provider.value)
        payment.save(update_fields=["audit_trail", "updated_at"])

        if not result.success:
            payment.mark_failed(result.message or "Gateway rejected the payment")
            logger.warning(f"Payment initiation failed via {gateway.provider.value}: {result.message}")
        else:
            logger.info(
                f"💳 Payment {payment.transaction_id} initiated via {gateway.provider.value} "
                f"({payment.currency} {payment.amount})"
            )
        return payment

    def verify(self, tenant_id, transaction_id: str) -> Payment:
        """Poll the gateway and feed the answer into the state machine"""
        payment = self.repos.payments.get_by_transaction(tenant_id, transaction_id)
        if payment.status != "pending":
            return payment

        gateway = self.gateways.get(payment.provider)
        result = gateway.verify(transaction_id)
        if result.status == PaymentStatus.COMPLETED:
            self.coordinator.handle_payment_completed(
                tenant_id, transaction_id, result.reference, dict(result.raw)
            )
        elif result.status == PaymentStatus.FAILED:
            self.fail(tenant_id, transaction_id, result.message, dict(result.raw))
        elif result.status == PaymentStatus.CANCELLED:
            with transaction.atomic():
                payment = self.repos.payments.get_by_transaction(tenant_id, transaction_id, for_update=True)
                payment.mark_cancelled()
        return self.repos.payments.get_by_transaction(tenant_id, transaction_id)

    def confirm_manual(self, tenant_id, transaction_id: str, actor_id: str = None):
        """Operator confirmation of a cash/agent payment"""
        return self.coordinator.handle_payment_completed(
            tenant_id, transaction_id, gateway_response={"confirmed_by": actor_id}
        )

    def fail(self, tenant_id, transaction_id: str, reason: str = "", gateway_response: dict = None) -> Payment:
        with transaction.atomic():
            payment = self.repos.payments.get_by_transaction(tenant_id, transaction_id, for_update=True)
            payment.mark_failed(reason, gateway_response)
        logger.info(f"Payment {transaction_id} failed: {reason}")
        return payment

    def refund(self, tenant_id, transaction_id: str, amount=None, reason: str = "") -> Payment:
        """Refund through the gateway; a refunded payment's voucher is disabled"""
        payment = self.repos.payments.get_by_transaction(tenant_id, transaction_id)
        if not payment.is_refundable:
            raise InvalidStateError("payment", payment.status, "refund", "not refundable")

        amount = Decimal(str(amount)) if amount is not None else payment.amount
        gateway = self.gateways.get(payment.provider)
        if not gateway.refund(transaction_id, amount):
            raise InvalidStateError("payment", payment.status, "refund", "declined by gateway")

        with transaction.atomic():
            payment = self.repos.payments.get_by_transaction(tenant_id, transaction_id, for_update=True)
            payment.mark_refunded(amount)
            voucher = self.repos.vouchers.for_payment(tenant_id, payment.pk)
            if voucher is not None and voucher.status in ("pending", "active"):
                self.vouchers.disable(tenant_id, voucher.pk, reason or "payment_refunded")

        logger.info(f"↩️ Payment {transaction_id} refunded ({amount})")
        return payment

    def open_dispute(self, tenant_id, transaction_id: str, reason: str) -> Payment:
        with transaction.atomic():
            payment = self.repos.payments.get_by_transaction(tenant_id, transaction_id, for_update=True)
            payment.open_dispute(reason)
        logger.warning(f"Payment {transaction_id} disputed: {reason}")
        return payment
