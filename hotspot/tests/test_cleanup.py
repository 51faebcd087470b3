"""
Tests for voucher expiration and retention cleanup
"""

from datetime import timedelta
from unittest import mock

from django.test import TestCase
from django.utils import timezone

from hotspot.cleanup import CleanupPolicy
from hotspot.events import VoucherCleanupPending
from hotspot.exceptions import PersistenceConflict
from hotspot.models import SystemLog, Voucher

from .fakes import FakeDeviceAdapter, RecordingPublisher, make_core, make_payment, make_tenant


class CleanupTestCase(TestCase):
    def setUp(self):
        self.publisher = RecordingPublisher()
        self.core = make_core(FakeDeviceAdapter(), self.publisher)
        self.tenant = make_tenant()
        self.tenant_id = str(self.tenant.id)
        self.now = timezone.now()
        self._seq = 0

    def make_voucher(self, status="active", expires_ago=None, updated_ago=None):
        """Voucher in ``status`` whose expiry/last update lie the given timedeltas back"""
        self._seq += 1
        payment = make_payment(self.tenant, transaction_id=f"PAY-{self._seq}")
        voucher = Voucher.objects.create(
            tenant=self.tenant,
            payment=payment,
            code=f"BIL-TEST-{self._seq:04d}",
            password="secret12",
            price=payment.amount,
        )
        fields = {"status": status}
        if expires_ago is not None:
            fields["expires_at"] = self.now - expires_ago
            fields["activated_at"] = fields["expires_at"] - timedelta(hours=24)
        if updated_ago is not None:
            fields["updated_at"] = self.now - updated_ago
        # update() leaves auto_now alone so timestamps can be back-dated
        Voucher.objects.filter(pk=voucher.pk).update(**fields)
        return Voucher.objects.get(pk=voucher.pk)

    def snapshot(self):
        return sorted(Voucher.objects.values_list("code", "status", "updated_at"))


class CleanupPolicyTest(CleanupTestCase):
    def test_dry_run_matches_real_run(self):
        """Test scenario: 3 stale expired + 2 stale disabled vouchers"""
        for _ in range(3):
            self.make_voucher("expired", expires_ago=timedelta(days=40))
        for _ in range(2):
            self.make_voucher("disabled", expires_ago=timedelta(days=200), updated_ago=timedelta(days=100))
        # Recent ones the policy must leave alone
        self.make_voucher("expired", expires_ago=timedelta(days=5))
        self.make_voucher("disabled", expires_ago=timedelta(days=50), updated_ago=timedelta(days=10))
        self.make_voucher("active", expires_ago=-timedelta(hours=3))

        policy = CleanupPolicy(auto_disable_after_days=30, delete_after_days=90)
        before = self.snapshot()

        preview = self.core.cleanup.cleanup(self.tenant_id, policy, dry_run=True, now=self.now)

        summary = preview.as_dict()
        self.assertEqual(summary["would_disable"], 3)
        self.assertEqual(summary["would_delete"], 2)
        self.assertEqual(summary["would_notify"], 3)
        self.assertEqual(self.snapshot(), before)
        self.assertEqual(self.publisher.events, [])

        result = self.core.cleanup.cleanup(self.tenant_id, policy, now=self.now).as_dict()

        self.assertEqual(result["disabled"], 3)
        self.assertEqual(result["deleted"], 2)
        self.assertEqual(result["notified"], 3)
        self.assertEqual(result["errors"], [])
        self.assertEqual(Voucher.objects.count(), 6)
        self.assertEqual(Voucher.objects.filter(status="disabled").count(), 4)
        self.assertEqual(len(self.publisher.of_type(VoucherCleanupPending)), 3)

    def test_active_voucher_long_past_expiry_previewed_as_disable(self):
        """Test an active voucher 40 days past expiry counts as would-disable and is disabled"""
        voucher = self.make_voucher("active", expires_ago=timedelta(days=40))
        policy = CleanupPolicy()

        preview = self.core.cleanup.cleanup(self.tenant_id, policy, dry_run=True, now=self.now).as_dict()
        result = self.core.cleanup.cleanup(self.tenant_id, policy, now=self.now).as_dict()

        self.assertEqual(preview["would_expire"], 1)
        self.assertEqual(preview["would_disable"], 1)
        self.assertEqual(result["expired"], 1)
        self.assertEqual(result["disabled"], 1)
        voucher.refresh_from_db()
        self.assertEqual(voucher.status, "disabled")

    def test_notification_sent_once(self):
        voucher = self.make_voucher("expired", expires_ago=timedelta(days=40))
        Voucher.objects.filter(pk=voucher.pk).update(notification_sent_at=self.now - timedelta(days=1))

        result = self.core.cleanup.cleanup(self.tenant_id, CleanupPolicy(), now=self.now)

        self.assertEqual(result.disabled, 1)
        self.assertEqual(result.notified, 0)

    def test_no_notify(self):
        self.make_voucher("expired", expires_ago=timedelta(days=40))
        policy = CleanupPolicy(notify_before_cleanup=False)
        result = self.core.cleanup.cleanup(self.tenant_id, policy, now=self.now)
        self.assertEqual(result.notified, 0)
        self.assertEqual(self.publisher.events, [])

    def test_zero_delete_days_never_deletes(self):
        self.make_voucher("disabled", expires_ago=timedelta(days=400), updated_ago=timedelta(days=365))
        policy = CleanupPolicy(delete_after_days=0)
        result = self.core.cleanup.cleanup(self.tenant_id, policy, now=self.now)
        self.assertEqual(result.deleted, 0)
        self.assertEqual(Voucher.objects.count(), 1)

    def test_item_failure_does_not_abort_batch(self):
        """Test a failing voucher is reported while the rest are processed"""
        bad = self.make_voucher("expired", expires_ago=timedelta(days=40))
        self.make_voucher("expired", expires_ago=timedelta(days=40))
        retire = self.core.vouchers.retire

        def flaky_retire(tenant_id, voucher_id):
            if voucher_id == bad.pk:
                raise PersistenceConflict("row changed underneath")
            return retire(tenant_id, voucher_id)

        with mock.patch.object(self.core.vouchers, "retire", side_effect=flaky_retire):
            result = self.core.cleanup.cleanup(self.tenant_id, CleanupPolicy(), now=self.now)

        self.assertEqual(result.disabled, 1)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0]["code"], bad.code)
        self.assertEqual(result.errors[0]["step"], "disable")
        log = SystemLog.objects.get(log_type="voucher_cleanup")
        self.assertEqual(log.severity, "warning")

    def test_cleanup_is_tenant_scoped(self):
        other = make_tenant("other")
        payment = make_payment(other, transaction_id="PAY-OTHER")
        foreign = Voucher.objects.create(
            tenant=other, payment=payment, code="BIL-OTHR-0001", password="x", price=1
        )
        Voucher.objects.filter(pk=foreign.pk).update(
            status="expired", expires_at=self.now - timedelta(days=40)
        )

        result = self.core.cleanup.cleanup(self.tenant_id, CleanupPolicy(), now=self.now)

        self.assertEqual(result.disabled, 0)
        foreign.refresh_from_db()
        self.assertEqual(foreign.status, "expired")

    def test_cleanup_all_tenants(self):
        other = make_tenant("other")
        payment = make_payment(other, transaction_id="PAY-OTHER")
        foreign = Voucher.objects.create(
            tenant=other, payment=payment, code="BIL-OTHR-0001", password="x", price=1
        )
        Voucher.objects.filter(pk=foreign.pk).update(
            status="expired", expires_at=self.now - timedelta(days=40)
        )
        self.make_voucher("expired", expires_ago=timedelta(days=40))

        result = self.core.cleanup.cleanup(policy=CleanupPolicy(), now=self.now)
        self.assertEqual(result.disabled, 2)


class VoucherTimelineTest(CleanupTestCase):
    def test_expire_disable_delete_timeline(self):
        """Test scenario: 24h voucher expires at T+25h, disabled at +31d, deleted at +91d more"""
        start = timezone.now()
        payment = make_payment(self.tenant, transaction_id="PAY-V1", package="daily")

        with mock.patch("django.utils.timezone.now", return_value=start):
            voucher = self.core.coordinator.claim(self.tenant_id, payment.pk).voucher
        self.assertEqual(voucher.expires_at, start + timedelta(hours=24))

        t1 = start + timedelta(hours=25)
        with mock.patch("django.utils.timezone.now", return_value=t1):
            result = self.core.cleanup.cleanup(self.tenant_id)
        self.assertEqual((result.expired, result.disabled, result.deleted), (1, 0, 0))
        voucher.refresh_from_db()
        self.assertEqual(voucher.status, "expired")

        t2 = t1 + timedelta(days=31)
        with mock.patch("django.utils.timezone.now", return_value=t2):
            result = self.core.cleanup.cleanup(self.tenant_id)
        self.assertEqual((result.expired, result.disabled, result.deleted), (0, 1, 0))
        voucher.refresh_from_db()
        self.assertEqual(voucher.status, "disabled")

        t3 = t2 + timedelta(days=91)
        with mock.patch("django.utils.timezone.now", return_value=t3):
            result = self.core.cleanup.cleanup(self.tenant_id)
        self.assertEqual(result.deleted, 1)
        self.assertFalse(Voucher.objects.filter(pk=voucher.pk).exists())

    def test_expire_only(self):
        self.make_voucher("active", expires_ago=timedelta(minutes=1))
        self.make_voucher("active", expires_ago=-timedelta(hours=1))
        result = self.core.cleanup.expire(self.tenant_id)
        self.assertEqual(result.expired, 1)
        self.assertEqual(Voucher.objects.filter(status="expired").count(), 1)
