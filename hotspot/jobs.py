"""
Database-backed background job queue.

Jobs are rows in ``BackgroundJob``. Workers (threads in one process or
separate processes) claim due jobs with ``SELECT ... FOR UPDATE SKIP
LOCKED`` so a job runs on one worker at a time. Failures are retried with
exponential backoff until the attempt budget or the deadline runs out; the
job is then marked failed and a critical alert is raised.
"""

import logging
import os
import socket
import threading
from datetime import timedelta
from typing import Callable, Dict, Optional

from django.db import IntegrityError, close_old_connections, connection, transaction
from django.utils import timezone

from .events import EventPublisher, SystemAlert
from .exceptions import ConfigurationError, EntityNotFound, InvalidStateError
from .models import BackgroundJob

logger = logging.getLogger(__name__)

JobHandler = Callable[[Optional[str], dict], Optional[dict]]

# Errors that another attempt cannot fix
PERMANENT_ERRORS = (ConfigurationError, EntityNotFound, InvalidStateError)


def default_worker_id(index: int = 0) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


class JobQueue:
    def __init__(self, config, audit, publisher: EventPublisher):
        self.config = config
        self.audit = audit
        self.publisher = publisher

    def enqueue(
        self,
        tenant_id,
        kind: str,
        payload: dict,
        dedupe_key: str = None,
        max_attempts: int = None,
        deadline_seconds: int = None,
        delay_seconds: int = 0,
    ) -> BackgroundJob:
        """
        Queue a job. A second enqueue with the same ``dedupe_key`` returns the
        existing job instead of creating another one.
        """
        now = timezone.now()
        deadline_seconds = (
            self.config.payment_job_deadline_seconds
            if deadline_seconds is None
            else deadline_seconds
        )
        try:
            with transaction.atomic():
                job = BackgroundJob.objects.create(
                    tenant_id=tenant_id,
                    kind=kind,
                    payload=payload,
                    dedupe_key=dedupe_key,
                    max_attempts=max_attempts or self.config.payment_job_max_attempts,
                    next_run_at=now + timedelta(seconds=delay_seconds),
                    deadline_at=now + timedelta(seconds=deadline_seconds) if deadline_seconds else None,
                )
        except IntegrityError:
            if dedupe_key is None:
                raise
            job = BackgroundJob.objects.get(dedupe_key=dedupe_key)
            logger.info(f"Duplicate job suppressed: {dedupe_key} (existing #{job.pk}, {job.status})")
            return job

        logger.info(f"📥 Queued {kind} job #{job.pk} for tenant {tenant_id}")
        return job

    def claim_next(self, worker_id: str = None) -> Optional[BackgroundJob]:
        """Lock and mark the next due job as running, or return None"""
        now = timezone.now()
        with transaction.atomic():
            job = (
                BackgroundJob.objects.select_for_update(skip_locked=True)
                .filter(status__in=["pending", "retrying"], next_run_at__lte=now)
                .order_by("next_run_at", "id")
                .first()
            )
            if job is None:
                return None
            job.status = "running"
            job.attempts += 1
            job.locked_by = worker_id or default_worker_id()
            job.locked_at = now
            job.save(update_fields=["status", "attempts", "locked_by", "locked_at", "updated_at"])
        return job

    def run(self, job: BackgroundJob, handlers: Dict[str, JobHandler]) -> str:
        """Execute a claimed job and record the outcome. Returns the new status."""
        if job.past_deadline:
            self._fail_permanently(job, "deadline exceeded before the job could run")
            return job.status

        handler = handlers.get(job.kind)
        if handler is None:
            self._fail_permanently(job, f"no handler registered for '{job.kind}'")
            return job.status

        tenant_id = str(job.tenant_id) if job.tenant_id else None
        try:
            result = handler(tenant_id, job.payload)
        except PERMANENT_ERRORS as e:
            self._fail_permanently(job, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.warning(
                f"Job {job.kind} #{job.pk} attempt {job.attempts}/{job.max_attempts} failed: {e}"
            )
            self._retry_or_fail(job, f"{type(e).__name__}: {e}")
        else:
            job.status = "succeeded"
            job.result = result if isinstance(result, dict) else None
            job.last_error = ""
            job.finished_at = timezone.now()
            job.save(update_fields=["status", "result", "last_error", "finished_at", "updated_at"])
            logger.info(f"✅ Job {job.kind} #{job.pk} succeeded on attempt {job.attempts}")
        return job.status

    def backoff_seconds(self, attempts: int) -> int:
        """Delay before the next attempt: base, 2x base, 4x base, ..."""
        return self.config.payment_job_backoff_seconds * (2 ** max(attempts - 1, 0))

    def _retry_or_fail(self, job: BackgroundJob, error: str):
        if job.attempts >= job.max_attempts:
            self._fail_permanently(job, error)
            return

        next_run_at = timezone.now() + timedelta(seconds=self.backoff_seconds(job.attempts))
        if job.deadline_at is not None and next_run_at >= job.deadline_at:
            self._fail_permanently(job, f"{error} (no retry possible before deadline)")
            return

        job.status = "retrying"
        job.next_run_at = next_run_at
        job.last_error = error
        job.locked_by = ""
        job.locked_at = None
        job.save(
            update_fields=[
                "status",
                "next_run_at",
                "last_error",
                "locked_by",
                "locked_at",
                "updated_at",
            ]
        )
        logger.info(f"🔁 Job {job.kind} #{job.pk} retrying at {next_run_at}")

    def _fail_permanently(self, job: BackgroundJob, error: str):
        job.status = "failed"
        job.last_error = error
        job.finished_at = timezone.now()
        job.locked_by = ""
        job.locked_at = None
        job.save(
            update_fields=[
                "status",
                "last_error",
                "finished_at",
                "locked_by",
                "locked_at",
                "updated_at",
            ]
        )

        tenant_id = str(job.tenant_id) if job.tenant_id else None
        title = f"Background job {job.kind} #{job.pk} failed permanently"
        logger.critical(f"🚨 {title} after {job.attempts} attempt(s): {error}")
        self.audit.record(
            tenant_id,
            "system_alert",
            title,
            data={
                "job_id": job.pk,
                "kind": job.kind,
                "payload": job.payload,
                "attempts": job.attempts,
                "error": error,
            },
            severity="critical",
        )
        self.publisher.publish(
            SystemAlert(tenant_id=tenant_id, severity="critical", title=title, detail=error)
        )

    def recover_stale(self) -> int:
        """Return jobs abandoned by a dead worker to the queue"""
        cutoff = timezone.now() - timedelta(seconds=self.config.job_lock_timeout_seconds)
        recovered = 0
        with transaction.atomic():
            stale = BackgroundJob.objects.select_for_update(skip_locked=True).filter(
                status="running", locked_at__lt=cutoff
            )
            for job in stale:
                logger.warning(f"Recovering stale job {job.kind} #{job.pk} from {job.locked_by}")
                self._retry_or_fail(job, f"worker {job.locked_by} stopped responding")
                recovered += 1
        return recovered

    def run_pending(self, handlers: Dict[str, JobHandler], limit: int = 100, worker_id: str = None) -> dict:
        """Drain due jobs once (cron / --once entry point)"""
        summary = {"success": True, "processed": 0, "succeeded": 0, "retrying": 0, "failed": 0}
        summary["recovered"] = self.recover_stale()
        while summary["processed"] < limit:
            job = self.claim_next(worker_id)
            if job is None:
                break
            status = self.run(job, handlers)
            summary["processed"] += 1
            if status in summary:
                summary[status] += 1
        return summary


class WorkerPool:
    """N worker threads draining the queue until stopped"""

    def __init__(self, queue: JobQueue, handlers: Dict[str, JobHandler], workers: int = 2, interval: float = 5):
        self.queue = queue
        self.handlers = handlers
        self.workers = max(1, workers)
        self.interval = interval
        self._stop = threading.Event()
        self._threads = []

    def start(self):
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._work,
                args=(default_worker_id(index),),
                name=f"job-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"🚀 Started {self.workers} job worker(s)")

    def stop(self, timeout: float = None):
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def _work(self, worker_id: str):
        try:
            while not self._stop.is_set():
                close_old_connections()
                try:
                    job = self.queue.claim_next(worker_id)
                    if job is None:
                        self._stop.wait(self.interval)
                        continue
                    self.queue.run(job, self.handlers)
                except Exception as e:
                    logger.error(f"Worker {worker_id} error: {e}", exc_info=True)
                    self._stop.wait(self.interval)
        finally:
            connection.close()
