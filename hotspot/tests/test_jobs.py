"""
Tests for the background job queue
"""

from dataclasses import replace
from datetime import timedelta

from django.test import TestCase
from django.utils import timezone

from hotspot.events import SystemAlert
from hotspot.exceptions import ConfigurationError, ConnectivityError
from hotspot.models import BackgroundJob, SystemLog

from .fakes import TEST_CONFIG, RecordingPublisher, make_core, make_tenant


class JobQueueTest(TestCase):
    def setUp(self):
        self.publisher = RecordingPublisher()
        self.core = make_core(publisher=self.publisher)
        self.jobs = self.core.jobs
        self.tenant_id = str(make_tenant().id)
        self.calls = []

    def _handlers(self, handler):
        return {"process_payment": handler}

    def test_enqueue_dedupes(self):
        first = self.jobs.enqueue(self.tenant_id, "process_payment", {"payment_id": 1}, dedupe_key="k")
        second = self.jobs.enqueue(self.tenant_id, "process_payment", {"payment_id": 1}, dedupe_key="k")
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(BackgroundJob.objects.count(), 1)

    def test_defaults_from_config(self):
        """Test 3 attempts within a 10 minute window by default"""
        job = self.jobs.enqueue(self.tenant_id, "process_payment", {})
        self.assertEqual(job.max_attempts, 3)
        self.assertAlmostEqual(
            (job.deadline_at - job.created_at).total_seconds(), 600, delta=5
        )

    def test_success(self):
        def handler(tenant_id, payload):
            self.calls.append((tenant_id, payload))
            return {"ok": True}

        self.jobs.enqueue(self.tenant_id, "process_payment", {"payment_id": 7})
        summary = self.jobs.run_pending(self._handlers(handler))

        self.assertEqual(summary["succeeded"], 1)
        self.assertEqual(self.calls, [(self.tenant_id, {"payment_id": 7})])
        job = BackgroundJob.objects.get()
        self.assertEqual(job.status, "succeeded")
        self.assertEqual(job.result, {"ok": True})

    def test_transient_failure_backs_off(self):
        def handler(tenant_id, payload):
            raise ConnectivityError("router down")

        job = self.jobs.enqueue(self.tenant_id, "process_payment", {})
        before = timezone.now()
        self.jobs.run(self.jobs.claim_next(), self._handlers(handler))

        job.refresh_from_db()
        self.assertEqual(job.status, "retrying")
        self.assertEqual(job.attempts, 1)
        self.assertIn("router down", job.last_error)
        self.assertGreaterEqual(job.next_run_at, before + timedelta(seconds=60))
        # Not due yet
        self.assertIsNone(self.jobs.claim_next())

    def test_backoff_doubles(self):
        self.assertEqual(self.jobs.backoff_seconds(1), 60)
        self.assertEqual(self.jobs.backoff_seconds(2), 120)
        self.assertEqual(self.jobs.backoff_seconds(3), 240)

    def test_exhausted_job_raises_critical_alert(self):
        """Test a job failing every attempt ends failed with a critical alert"""

        def handler(tenant_id, payload):
            raise ConnectivityError("router down")

        config = replace(TEST_CONFIG, payment_job_backoff_seconds=1)
        core = make_core(publisher=self.publisher, config=config)
        job = core.jobs.enqueue(self.tenant_id, "process_payment", {})

        for attempt in range(3):
            BackgroundJob.objects.filter(pk=job.pk).update(next_run_at=timezone.now())
            core.jobs.run(core.jobs.claim_next(), self._handlers(handler))

        job.refresh_from_db()
        self.assertEqual(job.status, "failed")
        self.assertEqual(job.attempts, 3)
        alert = SystemLog.objects.get(log_type="system_alert")
        self.assertEqual(alert.severity, "critical")
        self.assertEqual(alert.data["job_id"], job.pk)
        alerts = self.publisher.of_type(SystemAlert)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].severity, "critical")

    def test_retry_past_deadline_fails(self):
        def handler(tenant_id, payload):
            raise ConnectivityError("router down")

        job = self.jobs.enqueue(self.tenant_id, "process_payment", {}, deadline_seconds=30)
        self.jobs.run(self.jobs.claim_next(), self._handlers(handler))
        job.refresh_from_db()
        self.assertEqual(job.status, "failed")
        self.assertIn("deadline", job.last_error)

    def test_permanent_error_not_retried(self):
        def handler(tenant_id, payload):
            raise ConfigurationError("bad gateway config")

        job = self.jobs.enqueue(self.tenant_id, "process_payment", {})
        self.jobs.run(self.jobs.claim_next(), self._handlers(handler))
        job.refresh_from_db()
        self.assertEqual(job.status, "failed")
        self.assertEqual(job.attempts, 1)

    def test_missing_handler_fails(self):
        job = self.jobs.enqueue(self.tenant_id, "initialize_device", {})
        self.jobs.run(self.jobs.claim_next(), {})
        job.refresh_from_db()
        self.assertEqual(job.status, "failed")

    def test_stale_running_job_recovered(self):
        job = self.jobs.enqueue(self.tenant_id, "process_payment", {})
        claimed = self.jobs.claim_next("dead-worker")
        self.assertEqual(claimed.pk, job.pk)

        BackgroundJob.objects.filter(pk=job.pk).update(
            locked_at=timezone.now() - timedelta(seconds=TEST_CONFIG.job_lock_timeout_seconds + 60)
        )
        self.assertEqual(self.jobs.recover_stale(), 1)

        job.refresh_from_db()
        self.assertEqual(job.status, "retrying")
        self.assertEqual(job.locked_by, "")
