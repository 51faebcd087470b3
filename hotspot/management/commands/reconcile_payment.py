"""
Operator-triggered reconciliation of a completed payment.

Usage:
    python manage.py reconcile_payment TXN-123 --tenant acme
    python manage.py reconcile_payment TXN-123 --tenant acme --confirm   # manual/cash payment
"""

from django.core.management.base import BaseCommand, CommandError

from hotspot.exceptions import HotspotError
from hotspot.services import get_core


class Command(BaseCommand):
    help = "Issue (or show) the voucher for a completed payment"

    def add_arguments(self, parser):
        parser.add_argument("transaction_id")
        parser.add_argument("--tenant", required=True, help="Tenant slug")
        parser.add_argument(
            "--confirm",
            action="store_true",
            help="Mark a pending manual payment as completed first",
        )
        parser.add_argument("--actor", help="Operator id recorded with a manual confirmation")

    def handle(self, *args, **options):
        core = get_core()
        transaction_id = options["transaction_id"]
        try:
            tenant_id = core.repositories.tenants.resolve_slug(options["tenant"])
            if options["confirm"]:
                core.payments.confirm_manual(tenant_id, transaction_id, actor_id=options["actor"])
            payment = core.repositories.payments.get_by_transaction(tenant_id, transaction_id)
            result = core.coordinator.claim(tenant_id, payment.pk)
        except HotspotError as e:
            raise CommandError(str(e))

        voucher = result.voucher
        if voucher is None:
            self.stdout.write(
                self.style.WARNING(
                    f"⚠️ {transaction_id} was already issued a voucher that has since been removed, nothing issued"
                )
            )
            return

        verb = "Issued" if result.created else "Already issued"
        self.stdout.write(
            self.style.SUCCESS(
                f"✓ {verb} voucher {voucher.code} for {transaction_id} "
                f"({voucher.status}, expires {voucher.expires_at})"
            )
        )
