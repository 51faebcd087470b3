"""
Run background job workers (payment processing, voucher provisioning,
revocation and device initialisation).

Usage:
    python manage.py run_workers --workers 4
    python manage.py run_workers --once    # drain due jobs and exit (cron)
"""

import signal
import sys
import time

from django.core.management.base import BaseCommand

from hotspot.jobs import WorkerPool
from hotspot.services import get_core


class Command(BaseCommand):
    help = "Run background job workers"

    def add_arguments(self, parser):
        parser.add_argument("--workers", type=int, default=2, help="Worker threads (default: 2)")
        parser.add_argument(
            "--interval",
            type=float,
            default=5,
            help="Idle poll interval in seconds (default: 5)",
        )
        parser.add_argument("--once", action="store_true", help="Drain due jobs once and exit")

    def handle(self, *args, **options):
        core = get_core()

        if options["once"]:
            summary = core.jobs.run_pending(core.handlers)
            self.stdout.write(
                self.style.SUCCESS(
                    f"✅ Processed {summary['processed']} job(s): {summary['succeeded']} succeeded, "
                    f"{summary['retrying']} retrying, {summary['failed']} failed"
                )
            )
            return

        pool = WorkerPool(core.jobs, core.handlers, workers=options["workers"], interval=options["interval"])

        def signal_handler(signum, frame):
            self.stdout.write(self.style.WARNING("\n⚠️  Shutdown signal received, stopping workers..."))
            pool.stop(timeout=30)
            core.publisher.close()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        self.stdout.write(
            self.style.SUCCESS(f"🚀 Starting {options['workers']} worker(s)... Press Ctrl+C to stop")
        )
        pool.start()
        try:
            while True:
                recovered = core.jobs.recover_stale()
                if recovered:
                    self.stdout.write(self.style.WARNING(f"Recovered {recovered} stale job(s)"))
                time.sleep(60)
        except KeyboardInterrupt:
            self.stdout.write(self.style.WARNING("\n⚠️  Keyboard interrupt, stopping..."))
        finally:
            pool.stop(timeout=30)
            self.stdout.write(self.style.SUCCESS("✅ Workers stopped"))
