"""
Payment-to-voucher reconciliation.

However many times a payment's completion is signalled (gateway webhook
retries, polling, an operator re-running reconciliation), the payment ends
up with exactly one voucher. The payment row lock serialises claims, and
the one-to-one ``Voucher.payment`` column is the data-layer backstop if two
workers still race.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import IntegrityError, transaction

from .exceptions import InvalidStateError, PersistenceConflict
from .models import BackgroundJob, Voucher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimResult:
    # None when the payment's voucher was issued and has since been deleted
    voucher: Optional[Voucher]
    created: bool


class ReconciliationCoordinator:
    def __init__(self, repositories, vouchers, jobs):
        self.repos = repositories
        self.vouchers = vouchers
        self.jobs = jobs

    def claim(self, tenant_id, payment_id) -> ClaimResult:
        """
        Issue the voucher for a completed payment, or return the one it
        already has. Provisioning on the router is queued, not performed
        here, so a router outage never fails payment processing.

        A payment is issued a voucher at most once: if cleanup has since
        deleted it, claiming again is a no-op rather than a second voucher.
        """
        try:
            with transaction.atomic():
                payment = self.repos.payments.get(tenant_id, payment_id, for_update=True)

                existing = self.repos.vouchers.for_payment(tenant_id, payment.pk)
                if existing is not None:
                    logger.info(
                        f"Payment {payment.transaction_id} already has voucher {existing.code}, nothing to do"
                    )
                    return ClaimResult(existing, created=False)

                if payment.voucher_issued_at is not None:
                    logger.warning(
                        f"Payment {payment.transaction_id} was issued a voucher at "
                        f"{payment.voucher_issued_at} that no longer exists, not reissuing"
                    )
                    return ClaimResult(None, created=False)

                if payment.status != "completed":
                    raise InvalidStateError("payment", payment.status, "issue voucher")

                voucher = self.vouchers.create(tenant_id, payment)
                voucher = self.vouchers.activate(tenant_id, voucher.pk)
                payment.mark_voucher_issued()
                self.jobs.enqueue(
                    tenant_id,
                    "provision_voucher",
                    {"voucher_id": voucher.pk},
                    dedupe_key=f"provision_voucher:{voucher.pk}",
                )
        except IntegrityError:
            # Lost a race with another worker; its voucher is the answer
            existing = self.repos.vouchers.for_payment(tenant_id, payment_id)
            if existing is None:
                raise PersistenceConflict(
                    f"Voucher insert for payment {payment_id} conflicted but no voucher exists"
                )
            logger.info(f"Concurrent claim for payment {payment_id} resolved to {existing.code}")
            return ClaimResult(existing, created=False)

        logger.info(
            f"🎉 Payment {payment.transaction_id} reconciled: voucher {voucher.code} active until {voucher.expires_at}"
        )
        return ClaimResult(voucher, created=True)

    def handle_payment_completed(
        self, tenant_id, transaction_id: str, reference: str = None, gateway_response: dict = None
    ) -> BackgroundJob:
        """
        Entry point for every "payment completed" signal. Marks the payment
        completed (idempotent) and queues a single processing job for it.
        """
        with transaction.atomic():
            payment = self.repos.payments.get_by_transaction(tenant_id, transaction_id, for_update=True)
            payment.mark_completed(reference, gateway_response)
            job = self.jobs.enqueue(
                tenant_id,
                "process_payment",
                {"payment_id": payment.pk},
                dedupe_key=f"process_payment:{payment.pk}",
            )
        return job

    def process_payment_job(self, tenant_id, payload: dict) -> dict:
        """Job handler for ``process_payment``"""
        result = self.claim(tenant_id, payload["payment_id"])
        voucher = result.voucher
        return {
            "success": True,
            "voucher_id": voucher.pk if voucher else None,
            "code": voucher.code if voucher else None,
            "created": result.created,
        }
