"""
Device manager: registration, connection details and configuration of a
tenant's routers. Health status is not written here; see ``monitoring``.
"""

import logging
from typing import List, Optional

from django.db import transaction

from .devices import DeviceAdapter
from .events import ConfigurationChanged, DeviceStatusChanged, EventPublisher
from .exceptions import ConfigurationError
from .models import ConfigHistory, NetworkDevice

logger = logging.getLogger(__name__)


class DeviceManager:
    def __init__(self, repositories, adapter: DeviceAdapter, publisher: EventPublisher, jobs):
        self.repos = repositories
        self.adapter = adapter
        self.publisher = publisher
        self.jobs = jobs

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_device(
        self,
        tenant_id,
        name: str,
        host: str,
        username: str,
        password: str,
        port: int = 8728,
        use_ssl: bool = False,
    ) -> NetworkDevice:
        context = self.repos.tenants.get_context(tenant_id)
        if self.repos.devices.count(tenant_id) >= context.max_devices:
            raise ConfigurationError(
                f"Device limit reached ({context.max_devices}) for tenant {context.slug}"
            )
        if not host or not username:
            raise ConfigurationError("Device host and username are required")

        with transaction.atomic():
            device = self.repos.devices.create(
                tenant_id,
                name=name,
                host=host,
                username=username,
                password=password,
                port=port,
                use_ssl=use_ssl,
            )
            self.jobs.enqueue(
                tenant_id,
                "initialize_device",
                {"device_id": device.pk},
                dedupe_key=f"initialize_device:{device.pk}",
            )
            self.publisher.publish_on_commit(self._status_event(tenant_id, device, "added"))

        logger.info(f"➕ Registered device {device.name} ({host}:{port}) for tenant {context.slug}")
        return device

    def update_connection_details(self, tenant_id, device_id, actor_id: str = None, **changes) -> NetworkDevice:
        device = self.repos.devices.update_connection_details(tenant_id, device_id, **changes)
        self.repos.audit.record(
            tenant_id,
            "device_connection_change",
            f"Connection details of {device.name} changed",
            data={
                "device_id": device.pk,
                # never log the password itself
                "fields": sorted(changes),
                "actor_id": actor_id,
            },
        )
        self.publisher.publish(self._status_event(tenant_id, device, "updated"))
        return device

    def delete_device(self, tenant_id, device_id, actor_id: str = None):
        device = self.repos.devices.get(tenant_id, device_id)
        event = self._status_event(tenant_id, device, "deleted")
        name = device.name
        self.repos.devices.delete(tenant_id, device_id)
        self.repos.audit.record(
            tenant_id,
            "device_deleted",
            f"Device {name} deleted",
            data={"device_id": device_id, "actor_id": actor_id},
        )
        self.publisher.publish(event)
        logger.info(f"🗑️ Deleted device {name}")

    @staticmethod
    def _status_event(tenant_id, device: NetworkDevice, action: str) -> DeviceStatusChanged:
        return DeviceStatusChanged(
            tenant_id=str(tenant_id),
            device_id=device.pk,
            name=device.name,
            action=action,
            status=device.status,
        )

    # ------------------------------------------------------------------
    # Configuration (append-only history)
    # ------------------------------------------------------------------

    def update_configuration(self, tenant_id, device_id, configuration: dict, actor_id: str = None) -> NetworkDevice:
        """
        Apply a new configuration. The previous configuration, if any, is
        saved as a ``backup`` entry first; the new one as an ``update`` entry.
        """
        entries = []
        with transaction.atomic():
            device = self.repos.devices.get(tenant_id, device_id, for_update=True)
            previous = device.configuration
            if previous is not None:
                entries.append(
                    self.repos.config_history.append(device, previous, "backup", actor_id)
                )
            self.repos.devices.save_configuration(device, configuration, backup=previous)
            entries.append(
                self.repos.config_history.append(device, configuration, "update", actor_id)
            )
            self._audit_config_change(tenant_id, device, "update", actor_id)
            self._publish_history(tenant_id, device, entries, actor_id)

        logger.info(f"⚙️ Configuration of {device.name} updated by {actor_id or 'system'}")
        return device

    def restore_configuration(self, tenant_id, device_id, history_id, actor_id: str = None) -> NetworkDevice:
        """Re-apply a snapshot from history, logged as a new ``restore`` entry"""
        with transaction.atomic():
            device = self.repos.devices.get(tenant_id, device_id, for_update=True)
            source = self.repos.config_history.get(tenant_id, device_id, history_id)
            self.repos.devices.save_configuration(
                device, source.configuration_data, backup=device.configuration
            )
            entry = self.repos.config_history.append(
                device, source.configuration_data, "restore", actor_id
            )
            self._audit_config_change(
                tenant_id, device, "restore", actor_id, restored_from=source.pk
            )
            self._publish_history(tenant_id, device, [entry], actor_id)

        logger.info(f"⚙️ Configuration of {device.name} restored from entry #{history_id}")
        return device

    def get_configuration_history(self, tenant_id, device_id, limit: int = 50) -> List[ConfigHistory]:
        self.repos.devices.get(tenant_id, device_id)
        return self.repos.config_history.recent(tenant_id, device_id, limit)

    def latest_backup(self, tenant_id, device_id) -> Optional[ConfigHistory]:
        return self.repos.config_history.latest_backup(tenant_id, device_id)

    def _audit_config_change(self, tenant_id, device, change_type, actor_id, **extra):
        self.repos.audit.record(
            tenant_id,
            "device_config_change",
            f"Configuration {change_type} on {device.name}",
            data={"device_id": device.pk, "change_type": change_type, "actor_id": actor_id, **extra},
        )

    def _publish_history(self, tenant_id, device, entries, actor_id):
        for entry in entries:
            self.publisher.publish_on_commit(
                ConfigurationChanged(
                    tenant_id=str(tenant_id),
                    device_id=device.pk,
                    change_type=entry.change_type,
                    history_id=entry.pk,
                    actor_id=actor_id,
                )
            )

    # ------------------------------------------------------------------
    # Device users
    # ------------------------------------------------------------------

    def sync_device_users(self, tenant_id, device_id) -> dict:
        """Mirror the router's hotspot accounts into DeviceUser rows"""
        device = self.repos.devices.get(tenant_id, device_id)
        endpoint = self.repos.devices.get_endpoint(tenant_id, device_id)
        accounts = self.adapter.list_users(endpoint)
        counts = self.repos.device_users.mirror(device, accounts)
        logger.info(
            f"👥 Synced users of {device.name}: {counts['created']} new, "
            f"{counts['updated']} updated, {counts['deactivated']} deactivated"
        )
        return {"success": True, **counts}
