"""
Voucher expiration and retention policy.

Three steps run in order against a single ``now``:

1. expire   - active vouchers whose ``expires_at`` has passed
2. disable  - expired vouchers more than ``auto_disable_after_days`` past expiry
3. delete   - disabled vouchers untouched for ``delete_after_days``

Dry runs count the same querysets the real run acts on, so a preview
matches what the following real run will change.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from django.db.models import Q
from django.utils import timezone

from .events import EventPublisher, VoucherCleanupPending
from .models import Voucher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupPolicy:
    auto_disable_after_days: int = 30
    delete_after_days: int = 90
    notify_before_cleanup: bool = True

    @classmethod
    def from_config(cls, config, **overrides) -> "CleanupPolicy":
        values = {
            "auto_disable_after_days": config.cleanup_auto_disable_days,
            "delete_after_days": config.cleanup_delete_days,
            "notify_before_cleanup": config.cleanup_notify,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# Selection predicates, shared by dry runs and real runs


def expire_candidates(tenant_id, now):
    return Voucher.objects.filter(tenant_id=tenant_id, status="active", expires_at__lte=now)


def disable_candidates(tenant_id, policy: CleanupPolicy, now):
    cutoff = now - timedelta(days=policy.auto_disable_after_days)
    # Active vouchers this long past expiry are expired by step 1 first
    past_expiry = Q(status="expired") | Q(status="active", expires_at__lte=now)
    return Voucher.objects.filter(past_expiry, tenant_id=tenant_id, expires_at__lt=cutoff)


def delete_candidates(tenant_id, policy: CleanupPolicy, now):
    if policy.delete_after_days <= 0:
        return Voucher.objects.none()
    cutoff = now - timedelta(days=policy.delete_after_days)
    return Voucher.objects.filter(tenant_id=tenant_id, status="disabled", updated_at__lt=cutoff)


@dataclass
class CleanupResult:
    dry_run: bool = False
    expired: int = 0
    disabled: int = 0
    deleted: int = 0
    notified: int = 0
    errors: List[dict] = field(default_factory=list)

    def merge(self, other: "CleanupResult"):
        self.expired += other.expired
        self.disabled += other.disabled
        self.deleted += other.deleted
        self.notified += other.notified
        self.errors.extend(other.errors)

    def as_dict(self) -> dict:
        if self.dry_run:
            return {
                "would_expire": self.expired,
                "would_disable": self.disabled,
                "would_delete": self.deleted,
                "would_notify": self.notified,
            }
        return {
            "disabled": self.disabled,
            "deleted": self.deleted,
            "notified": self.notified,
            "errors": list(self.errors),
            "expired": self.expired,
        }


class VoucherCleanup:
    def __init__(self, repositories, vouchers, publisher: EventPublisher, config):
        self.repos = repositories
        self.vouchers = vouchers
        self.publisher = publisher
        self.config = config

    def default_policy(self) -> CleanupPolicy:
        return CleanupPolicy.from_config(self.config)

    def cleanup(self, tenant_id=None, policy: CleanupPolicy = None, dry_run: bool = False, now=None) -> CleanupResult:
        policy = policy or self.default_policy()
        now = now or timezone.now()
        tenant_ids = [tenant_id] if tenant_id else self.repos.tenants.active_tenant_ids()

        result = CleanupResult(dry_run=dry_run)
        for current in tenant_ids:
            if dry_run:
                result.merge(self._preview(current, policy, now))
            else:
                result.merge(self._run(current, policy, now))

        prefix = "🔍 Dry run" if dry_run else "🧹 Cleanup"
        logger.info(f"{prefix} finished: {result.as_dict()}")
        return result

    def expire(self, tenant_id=None, now=None) -> CleanupResult:
        """Step 1 only, for the frequent expiry cron"""
        now = now or timezone.now()
        tenant_ids = [tenant_id] if tenant_id else self.repos.tenants.active_tenant_ids()
        result = CleanupResult()
        for current in tenant_ids:
            partial = CleanupResult()
            self._expire(current, now, partial)
            result.merge(partial)
        return result

    def _preview(self, tenant_id, policy, now) -> CleanupResult:
        disable = disable_candidates(tenant_id, policy, now)
        return CleanupResult(
            dry_run=True,
            expired=expire_candidates(tenant_id, now).count(),
            disabled=disable.count(),
            deleted=delete_candidates(tenant_id, policy, now).count(),
            notified=(
                disable.filter(notification_sent_at__isnull=True).count()
                if policy.notify_before_cleanup
                else 0
            ),
        )

    def _run(self, tenant_id, policy, now) -> CleanupResult:
        result = CleanupResult()
        # Deletions are selected before step 2 touches updated_at
        to_delete = list(delete_candidates(tenant_id, policy, now).values_list("pk", "code"))

        self._expire(tenant_id, now, result)

        for voucher_id, code in disable_candidates(tenant_id, policy, now).values_list("pk", "code"):
            try:
                if policy.notify_before_cleanup:
                    self._notify(tenant_id, voucher_id, code, result)
                self.vouchers.retire(tenant_id, voucher_id)
                result.disabled += 1
            except Exception as e:
                self._record_error(result, voucher_id, code, "disable", e)

        for voucher_id, code in to_delete:
            try:
                voucher = self.repos.vouchers.get(tenant_id, voucher_id)
                self.repos.vouchers.delete(voucher)
                result.deleted += 1
            except Exception as e:
                self._record_error(result, voucher_id, code, "delete", e)

        self.repos.audit.record(
            tenant_id,
            "voucher_cleanup",
            f"Voucher cleanup: {result.expired} expired, {result.disabled} disabled, "
            f"{result.deleted} deleted, {len(result.errors)} error(s)",
            data={
                **result.as_dict(),
                "policy": {
                    "auto_disable_after_days": policy.auto_disable_after_days,
                    "delete_after_days": policy.delete_after_days,
                    "notify_before_cleanup": policy.notify_before_cleanup,
                },
            },
            severity="warning" if result.errors else "info",
        )
        return result

    def _expire(self, tenant_id, now, result: CleanupResult):
        for voucher_id, code in expire_candidates(tenant_id, now).values_list("pk", "code"):
            try:
                self.vouchers.mark_expired(tenant_id, voucher_id, now=now)
                result.expired += 1
            except Exception as e:
                self._record_error(result, voucher_id, code, "expire", e)

    def _notify(self, tenant_id, voucher_id, code, result: CleanupResult):
        voucher = self.repos.vouchers.get(tenant_id, voucher_id)
        if voucher.notification_sent_at is not None:
            return
        self.publisher.publish(
            VoucherCleanupPending(
                tenant_id=str(tenant_id), voucher_id=voucher_id, code=code, action="disable"
            )
        )
        voucher.mark_notification_sent()
        result.notified += 1

    @staticmethod
    def _record_error(result: CleanupResult, voucher_id, code, step: str, error: Exception):
        logger.warning(f"Cleanup step '{step}' failed for voucher {code}: {error}")
        result.errors.append(
            {"voucher_id": voucher_id, "code": code, "step": step, "error": str(error)}
        )
