"""
Tests for management commands and cron tasks
"""

import json
from datetime import timedelta
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase
from django.utils import timezone

from hotspot import tasks
from hotspot.models import Voucher

from .fakes import FakeDeviceAdapter, RecordingPublisher, make_core, make_device, make_payment, make_tenant


class CommandTestCase(TestCase):
    def setUp(self):
        self.adapter = FakeDeviceAdapter()
        self.core = make_core(self.adapter, RecordingPublisher())
        self.tenant = make_tenant()
        self.tenant_id = str(self.tenant.id)
        patchers = [
            mock.patch(f"hotspot.management.commands.{name}.get_core", return_value=self.core)
            for name in ("cleanup_vouchers", "monitor_devices", "reconcile_payment", "run_workers")
        ]
        patchers.append(mock.patch("hotspot.tasks.get_core", return_value=self.core))
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)

    def call(self, *args, **options):
        out = StringIO()
        call_command(*args, stdout=out, **options)
        return out.getvalue()


class CleanupVouchersCommandTest(CommandTestCase):
    def _stale_expired(self, count):
        for index in range(count):
            payment = make_payment(self.tenant, transaction_id=f"PAY-{index}")
            voucher = self.core.coordinator.claim(self.tenant_id, payment.pk).voucher
            Voucher.objects.filter(pk=voucher.pk).update(
                status="expired", expires_at=timezone.now() - timedelta(days=45)
            )

    def test_dry_run_changes_nothing(self):
        self._stale_expired(3)
        output = self.call("cleanup_vouchers", "--dry-run")
        summary = json.loads(output.strip().splitlines()[-1])
        self.assertEqual(summary["would_disable"], 3)
        self.assertEqual(Voucher.objects.filter(status="expired").count(), 3)

    def test_real_run_with_overrides(self):
        self._stale_expired(2)
        output = self.call(
            "cleanup_vouchers", "--auto-disable-after-days", "60", "--tenant", "acme", "--no-notify"
        )
        summary = json.loads(output.strip().splitlines()[-1])
        self.assertEqual(summary["disabled"], 0)

        output = self.call("cleanup_vouchers", "--auto-disable-after-days", "30")
        summary = json.loads(output.strip().splitlines()[-1])
        self.assertEqual(summary["disabled"], 2)
        self.assertEqual(summary["errors"], [])

    def test_unknown_tenant_fails(self):
        with self.assertRaises(CommandError):
            self.call("cleanup_vouchers", "--tenant", "nobody")


class MonitorDevicesCommandTest(CommandTestCase):
    def test_counts_reported(self):
        make_device(self.core, self.tenant, name="up", host="10.0.0.1")
        make_device(self.core, self.tenant, name="down", host="10.0.0.2")
        self.adapter.unreachable.add("10.0.0.2")

        output = self.call("monitor_devices")

        self.assertIn("2 device(s): 1 online, 1 offline, 0 error", output)
        self.assertIn("unreachable", output)

    def test_single_device(self):
        device = make_device(self.core, self.tenant)
        output = self.call("monitor_devices", "--device-id", str(device.pk))
        self.assertIn("1 device(s): 1 online", output)

    def test_missing_device_fails(self):
        with self.assertRaises(CommandError):
            self.call("monitor_devices", "--device-id", "4242")


class ReconcilePaymentCommandTest(CommandTestCase):
    def test_issue_then_repeat(self):
        make_payment(self.tenant, transaction_id="PAY-1")
        first = self.call("reconcile_payment", "PAY-1", "--tenant", "acme")
        second = self.call("reconcile_payment", "PAY-1", "--tenant", "acme")
        self.assertIn("Issued voucher", first)
        self.assertIn("Already issued", second)
        self.assertEqual(Voucher.objects.count(), 1)

    def test_removed_voucher_not_reissued(self):
        make_payment(self.tenant, transaction_id="PAY-1")
        self.call("reconcile_payment", "PAY-1", "--tenant", "acme")
        Voucher.objects.all().delete()

        output = self.call("reconcile_payment", "PAY-1", "--tenant", "acme")

        self.assertIn("has since been removed", output)
        self.assertEqual(Voucher.objects.count(), 0)

    def test_confirm_manual_payment(self):
        make_payment(self.tenant, transaction_id="MAN-1", status="pending")
        self.call("reconcile_payment", "MAN-1", "--tenant", "acme", "--confirm", "--actor", "op-1")
        self.assertEqual(Voucher.objects.get().payment.status, "completed")

    def test_pending_payment_fails(self):
        make_payment(self.tenant, transaction_id="PAY-P", status="pending")
        with self.assertRaises(CommandError):
            self.call("reconcile_payment", "PAY-P", "--tenant", "acme")


class RunWorkersCommandTest(CommandTestCase):
    def test_once_drains_queue(self):
        make_device(self.core, self.tenant)
        self.core.monitor.poll_tenant(self.tenant_id)
        make_payment(self.tenant, transaction_id="PAY-1")
        self.core.coordinator.handle_payment_completed(self.tenant_id, "PAY-1")

        output = self.call("run_workers", "--once")

        self.assertIn("succeeded", output)
        self.assertEqual(Voucher.objects.get().status, "active")
        self.assertEqual(len(self.adapter.provisioned), 1)


class CronTaskTest(CommandTestCase):
    def test_tasks_return_result_dicts(self):
        make_device(self.core, self.tenant)
        self.assertEqual(tasks.poll_devices()["online"], 1)
        self.assertTrue(tasks.expire_vouchers()["success"])
        self.assertTrue(tasks.process_due_jobs()["success"])
        self.assertTrue(tasks.cleanup_vouchers()["success"])

    def test_task_failure_is_reported_not_raised(self):
        with mock.patch.object(self.core.monitor, "poll_all", side_effect=RuntimeError("db down")):
            result = tasks.poll_devices()
        self.assertEqual(result, {"success": False, "error": "db down"})
