"""
Apply the voucher retention policy.

Usage:
    python manage.py cleanup_vouchers
    python manage.py cleanup_vouchers --dry-run
    python manage.py cleanup_vouchers --auto-disable-after-days 14 --delete-after-days 60 --tenant acme
"""

import json

from django.core.management.base import BaseCommand, CommandError

from hotspot.cleanup import CleanupPolicy
from hotspot.exceptions import HotspotError
from hotspot.services import get_core


class Command(BaseCommand):
    help = "Expire, auto-disable and delete vouchers according to the retention policy"

    def add_arguments(self, parser):
        parser.add_argument(
            "--auto-disable-after-days",
            type=int,
            help="Days past expiry before a voucher is disabled (default from settings)",
        )
        parser.add_argument(
            "--delete-after-days",
            type=int,
            help="Days after disablement before a voucher is deleted, 0 to never delete",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report what would change without changing anything",
        )
        parser.add_argument("--tenant", help="Only clean up this tenant (slug)")
        parser.add_argument(
            "--no-notify",
            action="store_true",
            help="Skip pre-cleanup notifications",
        )

    def handle(self, *args, **options):
        core = get_core()
        try:
            tenant_id = None
            if options["tenant"]:
                tenant_id = core.repositories.tenants.resolve_slug(options["tenant"])

            policy = CleanupPolicy.from_config(
                core.config,
                auto_disable_after_days=options["auto_disable_after_days"],
                delete_after_days=options["delete_after_days"],
                notify_before_cleanup=False if options["no_notify"] else None,
            )
            if policy.auto_disable_after_days < 0:
                raise CommandError("--auto-disable-after-days must not be negative")

            result = core.cleanup.cleanup(tenant_id=tenant_id, policy=policy, dry_run=options["dry_run"])
        except HotspotError as e:
            raise CommandError(str(e))

        summary = result.as_dict()
        if options["dry_run"]:
            self.stdout.write(self.style.WARNING("🔍 Dry run, nothing was changed"))
            self.stdout.write(
                f"  Would expire:  {summary['would_expire']}\n"
                f"  Would disable: {summary['would_disable']}\n"
                f"  Would delete:  {summary['would_delete']}\n"
                f"  Would notify:  {summary['would_notify']}"
            )
        else:
            self.stdout.write(
                self.style.SUCCESS(
                    f"✓ Expired {summary['expired']}, disabled {summary['disabled']}, "
                    f"deleted {summary['deleted']}, notified {summary['notified']}"
                )
            )
            for error in summary["errors"]:
                self.stdout.write(
                    self.style.WARNING(
                        f"⚠ {error['code']} ({error['step']}): {error['error']}"
                    )
                )

        self.stdout.write(json.dumps(summary, default=str))
