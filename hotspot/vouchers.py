"""
Voucher lifecycle service.

Wraps the ``Voucher`` transitions with tenant scoping, row locks and event
publishing, and owns the device-side side effects of a voucher
(provisioning, revocation, usage lookups).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import IntegrityError, transaction

from .devices import DeviceAdapter, UserCredentials
from .events import EventPublisher, VoucherActivated, VoucherExpired, VoucherGenerated
from .exceptions import ConnectivityError, InvalidStateError, PersistenceConflict
from .models import Payment, Voucher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoucherPackage:
    validity_hours: int
    profile: str
    data_limit_mb: Optional[int] = None


PACKAGES = {
    "daily_1gb": VoucherPackage(24, "1GB-DAILY", 1024),
    "weekly_5gb": VoucherPackage(168, "5GB-WEEKLY", 5 * 1024),
    "monthly_20gb": VoucherPackage(720, "20GB-MONTHLY", 20 * 1024),
    "unlimited_daily": VoucherPackage(24, "UNLIMITED-DAILY"),
    "unlimited_weekly": VoucherPackage(168, "UNLIMITED-WEEKLY"),
    "unlimited_monthly": VoucherPackage(720, "UNLIMITED-MONTHLY"),
    "daily": VoucherPackage(24, "DAILY"),
    "weekly": VoucherPackage(168, "WEEKLY"),
    "monthly": VoucherPackage(720, "MONTHLY"),
}

DEFAULT_PACKAGE = VoucherPackage(24, "DEFAULT")


def resolve_package(metadata: dict) -> VoucherPackage:
    """Package bought with a payment; ``validity_hours`` in metadata overrides the table"""
    metadata = metadata or {}
    package = PACKAGES.get(str(metadata.get("package", "")).lower(), DEFAULT_PACKAGE)
    hours = metadata.get("validity_hours")
    if hours:
        package = VoucherPackage(int(hours), package.profile, package.data_limit_mb)
    return package


class VoucherService:
    def __init__(self, repositories, publisher: EventPublisher, adapter: DeviceAdapter, jobs, config):
        self.repos = repositories
        self.publisher = publisher
        self.adapter = adapter
        self.jobs = jobs
        self.config = config

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, tenant_id, payment: Payment) -> Voucher:
        """
        Create the pending voucher for a completed payment.
        Code collisions (checked or raced) are retried with a fresh code.
        """
        if str(payment.tenant_id) != str(tenant_id):
            raise InvalidStateError("payment", payment.status, "issue voucher", "tenant mismatch")
        if payment.status != "completed":
            raise InvalidStateError("payment", payment.status, "issue voucher")
        if self.repos.vouchers.for_payment(tenant_id, payment.pk) is not None:
            raise InvalidStateError("payment", payment.status, "issue voucher", "voucher already exists")

        context = self.repos.tenants.get_context(tenant_id)
        package = resolve_package(payment.metadata)
        attempts = self.config.code_generation_attempts

        for attempt in range(1, attempts + 1):
            code = Voucher.generate_code(tenant_id, context.voucher_prefix, max_attempts=attempts)
            if code is None:
                break
            voucher = Voucher(
                tenant_id=tenant_id,
                payment=payment,
                code=code,
                password=Voucher.generate_password(),
                profile=package.profile,
                validity_hours=package.validity_hours,
                data_limit_mb=package.data_limit_mb,
                price=payment.amount,
                currency=payment.currency,
                metadata={
                    "package": (payment.metadata or {}).get("package", ""),
                    "transaction_id": payment.transaction_id,
                },
            )
            try:
                self.repos.vouchers.insert(voucher)
            except IntegrityError:
                if self.repos.vouchers.for_payment(tenant_id, payment.pk) is not None:
                    raise
                logger.warning(
                    f"Voucher code collision on {code} (attempt {attempt}/{attempts}), regenerating"
                )
                continue

            logger.info(
                f"🎫 Voucher {voucher.code} created for payment {payment.transaction_id} "
                f"({voucher.profile}, {voucher.validity_hours}h)"
            )
            self.publisher.publish_on_commit(
                VoucherGenerated(
                    tenant_id=str(tenant_id),
                    voucher_id=voucher.pk,
                    code=voucher.code,
                    payment_id=payment.pk,
                    transaction_id=payment.transaction_id,
                    profile=voucher.profile,
                )
            )
            return voucher

        raise PersistenceConflict(
            f"Could not allocate a unique voucher code for tenant {tenant_id} after {attempts} attempts"
        )

    # ------------------------------------------------------------------
    # Transitions (each serialised by a row lock)
    # ------------------------------------------------------------------

    def activate(self, tenant_id, voucher_id) -> Voucher:
        with transaction.atomic():
            voucher = self.repos.vouchers.get(tenant_id, voucher_id, for_update=True)
            voucher.activate()
            self.publisher.publish_on_commit(
                VoucherActivated(
                    tenant_id=str(tenant_id),
                    voucher_id=voucher.pk,
                    code=voucher.code,
                    expires_at=voucher.expires_at.isoformat(),
                )
            )
        logger.info(f"Voucher {voucher.code} activated, expires {voucher.expires_at}")
        return voucher

    def mark_used(self, tenant_id, voucher_id) -> Voucher:
        with transaction.atomic():
            voucher = self.repos.vouchers.get(tenant_id, voucher_id, for_update=True)
            voucher.mark_as_used()
        return voucher

    def mark_expired(self, tenant_id, voucher_id, now=None) -> Voucher:
        with transaction.atomic():
            voucher = self.repos.vouchers.get(tenant_id, voucher_id, for_update=True)
            voucher.mark_as_expired(now)
            self._queue_revocation(tenant_id, voucher)
            self.publisher.publish_on_commit(
                VoucherExpired(tenant_id=str(tenant_id), voucher_id=voucher.pk, code=voucher.code)
            )
        logger.info(f"⏰ Voucher {voucher.code} expired")
        return voucher

    def disable(self, tenant_id, voucher_id, reason: str = "") -> Voucher:
        with transaction.atomic():
            voucher = self.repos.vouchers.get(tenant_id, voucher_id, for_update=True)
            voucher.disable(reason)
            self._queue_revocation(tenant_id, voucher)
        logger.info(f"Voucher {voucher.code} disabled ({reason or 'no reason given'})")
        return voucher

    def retire(self, tenant_id, voucher_id) -> Voucher:
        with transaction.atomic():
            voucher = self.repos.vouchers.get(tenant_id, voucher_id, for_update=True)
            voucher.retire()
            self._queue_revocation(tenant_id, voucher)
        return voucher

    def renew(self, tenant_id, voucher_id, additional_hours: int) -> Voucher:
        with transaction.atomic():
            voucher = self.repos.vouchers.get(tenant_id, voucher_id, for_update=True)
            voucher.renew(additional_hours)
        logger.info(
            f"Voucher {voucher.code} renewed by {additional_hours}h, now expires {voucher.expires_at}"
        )
        return voucher

    def record_usage(self, tenant_id, voucher_id, stats: dict) -> Voucher:
        with transaction.atomic():
            voucher = self.repos.vouchers.get(tenant_id, voucher_id, for_update=True)
            voucher.record_usage(stats)
        return voucher

    def is_usable(self, tenant_id, code: str) -> bool:
        return self.repos.vouchers.get_by_code(tenant_id, code).is_usable

    def _queue_revocation(self, tenant_id, voucher: Voucher):
        binding = self.repos.device_users.for_voucher(tenant_id, voucher.pk)
        if binding is not None and binding.is_active:
            self.jobs.enqueue(
                tenant_id,
                "revoke_voucher",
                {"voucher_id": voucher.pk},
                dedupe_key=f"revoke_voucher:{voucher.pk}",
            )

    # ------------------------------------------------------------------
    # Device side
    # ------------------------------------------------------------------

    def provision(self, tenant_id, voucher_id) -> dict:
        """
        Create the voucher's hotspot login on its target router.
        Raises ConnectivityError so the job queue retries it.
        """
        voucher = self.repos.vouchers.get(tenant_id, voucher_id)
        if not voucher.is_usable:
            logger.info(f"Skipping provisioning of {voucher.code}: status {voucher.status}")
            return {"success": True, "skipped": True, "status": voucher.status}

        device = voucher.payment.device
        if device is None or not device.is_active:
            device = self.repos.devices.first_online(tenant_id)
        if device is None:
            raise ConnectivityError(f"No online device available to provision {voucher.code}")

        endpoint = self.repos.devices.get_endpoint(tenant_id, device.pk)
        self.adapter.provision_user(
            endpoint, UserCredentials(voucher.code, voucher.password), voucher.profile
        )

        self.repos.device_users.bind(device, voucher.code, voucher.password, voucher.profile, voucher)
        with transaction.atomic():
            voucher = self.repos.vouchers.get(tenant_id, voucher_id, for_update=True)
            voucher.device_metadata = {
                **(voucher.device_metadata or {}),
                "device_id": device.pk,
                "device_name": device.name,
                "provisioned": True,
            }
            voucher.save(update_fields=["device_metadata", "updated_at"])

        logger.info(f"✅ Voucher {voucher.code} provisioned on {device.name}")
        return {"success": True, "device_id": device.pk, "code": voucher.code}

    def revoke(self, tenant_id, voucher_id) -> dict:
        """Disable the voucher's login on its router. Raises ConnectivityError."""
        binding = self.repos.device_users.for_voucher(tenant_id, voucher_id)
        if binding is None:
            return {"success": True, "skipped": True}

        endpoint = self.repos.devices.get_endpoint(tenant_id, binding.device_id)
        self.adapter.revoke_user(endpoint, binding.username)
        self.repos.device_users.deactivate(binding)
        logger.info(f"🔒 Revoked {binding.username} on {binding.device.name}")
        return {"success": True, "device_id": binding.device_id}

    def get_usage(self, tenant_id, voucher_id) -> dict:
        """Live usage from the router's active sessions, merged into usage_stats"""
        voucher = self.repos.vouchers.get(tenant_id, voucher_id)
        binding = self.repos.device_users.for_voucher(tenant_id, voucher_id)
        if binding is None:
            return {"code": voucher.code, "online": False, "usage": voucher.usage_stats}

        endpoint = self.repos.devices.get_endpoint(tenant_id, binding.device_id)
        sessions = [
            s for s in self.adapter.list_active_sessions(endpoint) if s.username == binding.username
        ]
        bytes_in = sum(s.bytes_in for s in sessions)
        bytes_out = sum(s.bytes_out for s in sessions)
        stats = {
            "bytes_in": bytes_in,
            "bytes_out": bytes_out,
            "session_time": sum(s.uptime_seconds for s in sessions),
        }
        if voucher.data_limit_mb:
            used_mb = (bytes_in + bytes_out) / (1024 * 1024)
            stats["data_used_percent"] = round(min(used_mb / voucher.data_limit_mb * 100, 100), 2)

        voucher = self.record_usage(tenant_id, voucher_id, stats)
        return {"code": voucher.code, "online": bool(sessions), "usage": voucher.usage_stats}

    def sync_with_device(self, tenant_id, voucher_id) -> dict:
        """Make the router agree with the voucher: usable vouchers have a login, others don't"""
        voucher = self.repos.vouchers.get(tenant_id, voucher_id)
        binding = self.repos.device_users.for_voucher(tenant_id, voucher_id)

        if voucher.is_usable:
            if binding is None or not binding.is_active:
                return {"action": "provisioned", **self.provision(tenant_id, voucher_id)}
            return {"action": "none", "success": True}

        if binding is not None and binding.is_active:
            return {"action": "revoked", **self.revoke(tenant_id, voucher_id)}
        return {"action": "none", "success": True}
