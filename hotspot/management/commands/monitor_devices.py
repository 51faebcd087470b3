"""
Poll routers and report their status.

Usage:
    python manage.py monitor_devices
    python manage.py monitor_devices --tenant acme
    python manage.py monitor_devices --device-id 12
"""

from django.core.management.base import BaseCommand, CommandError

from hotspot.exceptions import HotspotError
from hotspot.services import get_core


class Command(BaseCommand):
    help = "Poll one or all routers and report online/offline/error counts"

    def add_arguments(self, parser):
        parser.add_argument("--device-id", type=int, help="Poll a single device")
        parser.add_argument("--tenant", help="Only poll this tenant's devices (slug)")

    def handle(self, *args, **options):
        core = get_core()
        repos = core.repositories
        try:
            tenant_id = repos.tenants.resolve_slug(options["tenant"]) if options["tenant"] else None

            if options["device_id"]:
                device_id = options["device_id"]
                tenant_id = tenant_id or repos.devices.locate_tenant(device_id)
                report = core.monitor.poll_device(tenant_id, device_id)
            elif tenant_id:
                report = core.monitor.poll_tenant(tenant_id)
            else:
                report = core.monitor.poll_all()
        except HotspotError as e:
            raise CommandError(str(e))

        for result in report.results:
            style = self.style.SUCCESS if result.status == "online" else self.style.WARNING
            line = f"  {result.name}: {result.status}"
            if result.failure_kind:
                line += f" ({result.failure_kind}: {result.error})"
            self.stdout.write(style(line))

        summary = report.as_dict()
        self.stdout.write(
            self.style.SUCCESS(
                f"\n📡 {summary['total']} device(s): {summary['online']} online, "
                f"{summary['offline']} offline, {summary['error']} error"
            )
        )
        for error in summary["errors"]:
            if "failure_kind" not in error:
                self.stdout.write(self.style.ERROR(f"✗ {error.get('name', '')}: {error['error']}"))
        for skipped in summary["not_polled"]:
            self.stdout.write(self.style.WARNING(f"⏭️ {skipped['name']}: not polled this cycle"))
