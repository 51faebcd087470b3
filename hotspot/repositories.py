"""
Tenant-scoped persistence boundary.

Every method takes the tenant id explicitly and filters on it; an entity
belonging to another tenant is reported as not found. Read-mostly lookups
(tenant context, router connection details) go through the injected cache
and are invalidated on every write that touches them.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from .cache import NullCache, RepositoryCache
from .crypto import CredentialCipher
from .devices import DeviceEndpoint
from .exceptions import ConfigurationError, EntityNotFound, PersistenceConflict
from .models import (
    ConfigHistory,
    DeviceUser,
    NetworkDevice,
    Payment,
    SystemLog,
    Tenant,
    TenantContext,
    Voucher,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("hotspot.audit")


def _get(queryset, entity: str, tenant_id, for_update: bool = False, **lookup):
    if for_update:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(**lookup)
    except queryset.model.DoesNotExist:
        identifier = next(iter(lookup.values())) if lookup else None
        raise EntityNotFound(entity, identifier, tenant_id) from None


class TenantRepository:
    def __init__(self, cache: RepositoryCache = None, ttl: int = 300):
        self.cache = cache or NullCache()
        self.ttl = ttl

    @staticmethod
    def _key(tenant_id) -> str:
        return f"tenant:{tenant_id}:context"

    def get_context(self, tenant_id) -> TenantContext:
        cached = self.cache.get(self._key(tenant_id))
        if cached is not None:
            return cached
        tenant = _get(Tenant.objects.all(), "tenant", tenant_id, pk=tenant_id)
        context = tenant.context()
        self.cache.set(self._key(tenant_id), context, self.ttl)
        return context

    def resolve_slug(self, slug: str) -> str:
        tenant = _get(Tenant.objects.all(), "tenant", None, slug=slug)
        return str(tenant.id)

    def active_tenant_ids(self) -> List[str]:
        return [str(pk) for pk in Tenant.objects.filter(is_active=True).values_list("id", flat=True)]

    def invalidate(self, tenant_id):
        self.cache.invalidate(self._key(tenant_id))


class PaymentRepository:
    def scoped(self, tenant_id):
        return Payment.objects.filter(tenant_id=tenant_id)

    def get(self, tenant_id, payment_id, for_update: bool = False) -> Payment:
        return _get(self.scoped(tenant_id), "payment", tenant_id, for_update, pk=payment_id)

    def get_by_transaction(self, tenant_id, transaction_id, for_update: bool = False) -> Payment:
        return _get(
            self.scoped(tenant_id),
            "payment",
            tenant_id,
            for_update,
            transaction_id=transaction_id,
        )

    def create(self, tenant_id, **fields) -> Payment:
        try:
            with transaction.atomic():
                return Payment.objects.create(tenant_id=tenant_id, **fields)
        except IntegrityError as e:
            raise PersistenceConflict(
                f"Payment {fields.get('transaction_id')} already exists"
            ) from e


class VoucherRepository:
    def scoped(self, tenant_id):
        return Voucher.objects.filter(tenant_id=tenant_id)

    def get(self, tenant_id, voucher_id, for_update: bool = False) -> Voucher:
        return _get(self.scoped(tenant_id), "voucher", tenant_id, for_update, pk=voucher_id)

    def get_by_code(self, tenant_id, code: str) -> Voucher:
        return _get(self.scoped(tenant_id), "voucher", tenant_id, code=code.upper())

    def for_payment(self, tenant_id, payment_id) -> Optional[Voucher]:
        return self.scoped(tenant_id).filter(payment_id=payment_id).first()

    def insert(self, voucher: Voucher) -> Voucher:
        """Insert inside a savepoint so a unique violation leaves the caller's transaction usable"""
        with transaction.atomic():
            voucher.save(force_insert=True)
        return voucher

    def delete(self, voucher: Voucher):
        voucher.delete()


class DeviceRepository:
    """Routers. Passwords are encrypted on write and decrypted on read."""

    CONNECTION_FIELDS = {"name", "host", "port", "username", "password", "use_ssl", "is_active"}

    def __init__(self, cipher: CredentialCipher, cache: RepositoryCache = None, ttl: int = 300):
        self.cipher = cipher
        self.cache = cache or NullCache()
        self.ttl = ttl

    @staticmethod
    def _key(tenant_id, device_id) -> str:
        return f"tenant:{tenant_id}:device:{device_id}:connection"

    def scoped(self, tenant_id):
        return NetworkDevice.objects.filter(tenant_id=tenant_id)

    def get(self, tenant_id, device_id, for_update: bool = False) -> NetworkDevice:
        return _get(self.scoped(tenant_id), "device", tenant_id, for_update, pk=device_id)

    def count(self, tenant_id) -> int:
        return self.scoped(tenant_id).count()

    def list_active(self, tenant_id) -> List[NetworkDevice]:
        return list(self.scoped(tenant_id).filter(is_active=True))

    def first_online(self, tenant_id) -> Optional[NetworkDevice]:
        return (
            self.scoped(tenant_id)
            .filter(is_active=True, status="online")
            .order_by("-last_seen")
            .first()
        )

    def locate_tenant(self, device_id) -> str:
        """Tenant owning a device, for operator entry points that only know the id"""
        tenant_id = (
            NetworkDevice.objects.filter(pk=device_id).values_list("tenant_id", flat=True).first()
        )
        if tenant_id is None:
            raise EntityNotFound("device", device_id)
        return str(tenant_id)

    def create(
        self,
        tenant_id,
        name: str,
        host: str,
        username: str,
        password: str,
        port: int = 8728,
        use_ssl: bool = False,
    ) -> NetworkDevice:
        try:
            with transaction.atomic():
                return NetworkDevice.objects.create(
                    tenant_id=tenant_id,
                    name=name,
                    host=host,
                    port=port,
                    username=username,
                    password_encrypted=self.cipher.encrypt(password),
                    use_ssl=use_ssl,
                )
        except IntegrityError as e:
            raise PersistenceConflict(f"Device '{name}' already exists for this tenant") from e

    def endpoint(self, device: NetworkDevice) -> DeviceEndpoint:
        return DeviceEndpoint(
            device_id=device.pk,
            tenant_id=str(device.tenant_id),
            name=device.name,
            host=device.host,
            port=device.port,
            username=device.username,
            password=self.cipher.decrypt(device.password_encrypted),
            use_ssl=device.use_ssl,
        )

    def get_endpoint(self, tenant_id, device_id) -> DeviceEndpoint:
        key = self._key(tenant_id, device_id)
        connection = self.cache.get(key)
        if connection is None:
            device = self.get(tenant_id, device_id)
            connection = {
                "name": device.name,
                "host": device.host,
                "port": device.port,
                "username": device.username,
                "password_encrypted": device.password_encrypted,
                "use_ssl": device.use_ssl,
            }
            self.cache.set(key, connection, self.ttl)

        return DeviceEndpoint(
            device_id=device_id,
            tenant_id=str(tenant_id),
            name=connection["name"],
            host=connection["host"],
            port=connection["port"],
            username=connection["username"],
            password=self.cipher.decrypt(connection["password_encrypted"]),
            use_ssl=connection["use_ssl"],
        )

    def update_connection_details(self, tenant_id, device_id, **changes) -> NetworkDevice:
        """
        Change how the router is reached. ``status`` and health fields are
        not accepted here: only the poll loop writes them.
        """
        rejected = set(changes) - self.CONNECTION_FIELDS
        if rejected:
            raise ConfigurationError(
                f"Fields cannot be edited directly: {', '.join(sorted(rejected))}"
            )

        with transaction.atomic():
            device = self.get(tenant_id, device_id, for_update=True)
            for name, value in changes.items():
                if name == "password":
                    device.password_encrypted = self.cipher.encrypt(value)
                else:
                    setattr(device, name, value)
            device.save()
        self.cache.invalidate(self._key(tenant_id, device_id))
        return device

    def save_configuration(self, device: NetworkDevice, configuration, backup=None):
        device.configuration = configuration
        fields = ["configuration", "updated_at"]
        if backup is not None:
            device.backup_configuration = backup
            fields.append("backup_configuration")
        device.save(update_fields=fields)

    def delete(self, tenant_id, device_id):
        device = self.get(tenant_id, device_id)
        device.delete()
        self.cache.invalidate(self._key(tenant_id, device_id))


class DeviceUserRepository:
    def scoped(self, tenant_id):
        return DeviceUser.objects.filter(device__tenant_id=tenant_id)

    def for_voucher(self, tenant_id, voucher_id) -> Optional[DeviceUser]:
        return self.scoped(tenant_id).select_related("device").filter(voucher_id=voucher_id).first()

    def list_for_device(self, tenant_id, device_id) -> List[DeviceUser]:
        return list(self.scoped(tenant_id).filter(device_id=device_id))

    def bind(
        self,
        device: NetworkDevice,
        username: str,
        password: str,
        profile: str,
        voucher: Optional[Voucher] = None,
    ) -> DeviceUser:
        """Create or refresh the device login; a voucher moves with its login"""
        with transaction.atomic():
            if voucher is not None:
                # A voucher is bound to at most one login at a time
                DeviceUser.objects.filter(voucher=voucher).exclude(
                    device=device, username=username
                ).update(voucher=None, is_active=False)

            user, _ = DeviceUser.objects.update_or_create(
                device=device,
                username=username,
                defaults={
                    "password": password,
                    "profile": profile,
                    "voucher": voucher,
                    "is_active": True,
                    "last_synced_at": timezone.now(),
                },
            )
        return user

    def mirror(self, device: NetworkDevice, accounts: Iterable) -> dict:
        """Upsert the router's account list and deactivate logins it no longer has"""
        seen = set()
        created = updated = 0
        now = timezone.now()
        for account in accounts:
            seen.add(account.username)
            _, was_created = DeviceUser.objects.update_or_create(
                device=device,
                username=account.username,
                defaults={
                    "profile": account.profile or "default",
                    "is_active": not account.disabled,
                    "last_synced_at": now,
                },
            )
            if was_created:
                created += 1
            else:
                updated += 1

        deactivated = (
            DeviceUser.objects.filter(device=device, is_active=True)
            .exclude(username__in=seen)
            .update(is_active=False, last_synced_at=now)
        )
        return {"created": created, "updated": updated, "deactivated": deactivated}

    def deactivate(self, user: DeviceUser):
        user.is_active = False
        user.save(update_fields=["is_active", "updated_at"])


class ConfigHistoryRepository:
    def scoped(self, tenant_id, device_id):
        return ConfigHistory.objects.filter(device__tenant_id=tenant_id, device_id=device_id)

    def append(
        self,
        device: NetworkDevice,
        configuration,
        change_type: str,
        actor_id: Optional[str] = None,
    ) -> ConfigHistory:
        return ConfigHistory.objects.create(
            device=device,
            configuration_data=configuration,
            change_type=change_type,
            changed_by=actor_id,
        )

    def get(self, tenant_id, device_id, history_id) -> ConfigHistory:
        return _get(
            self.scoped(tenant_id, device_id), "config history entry", tenant_id, pk=history_id
        )

    def recent(self, tenant_id, device_id, limit: int = 50) -> List[ConfigHistory]:
        return list(self.scoped(tenant_id, device_id).order_by("-created_at", "-id")[:limit])

    def latest_backup(self, tenant_id, device_id) -> Optional[ConfigHistory]:
        return (
            self.scoped(tenant_id, device_id)
            .filter(change_type="backup")
            .order_by("-created_at", "-id")
            .first()
        )


class AuditLogRepository:
    """Writes the operator-visible audit channel (database + hotspot.audit logger)"""

    LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "critical": logging.CRITICAL}

    def record(
        self,
        tenant_id,
        log_type: str,
        message: str,
        data: dict = None,
        severity: str = "info",
    ) -> SystemLog:
        audit_logger.log(
            self.LEVELS.get(severity, logging.INFO),
            f"[{log_type}] tenant={tenant_id} {message}",
        )
        return SystemLog.objects.create(
            tenant_id=tenant_id,
            log_type=log_type,
            severity=severity,
            message=message,
            data=data or {},
        )

    def recent(self, tenant_id, log_type: str = None, limit: int = 50) -> List[SystemLog]:
        queryset = SystemLog.objects.filter(tenant_id=tenant_id)
        if log_type:
            queryset = queryset.filter(log_type=log_type)
        return list(queryset[:limit])


@dataclass
class Repositories:
    tenants: TenantRepository
    payments: PaymentRepository
    vouchers: VoucherRepository
    devices: DeviceRepository
    device_users: DeviceUserRepository
    config_history: ConfigHistoryRepository
    audit: AuditLogRepository

    @classmethod
    def build(cls, cipher: CredentialCipher, cache: RepositoryCache = None, ttl: int = 300):
        return cls(
            tenants=TenantRepository(cache, ttl),
            payments=PaymentRepository(),
            vouchers=VoucherRepository(),
            devices=DeviceRepository(cipher, cache, ttl),
            device_users=DeviceUserRepository(),
            config_history=ConfigHistoryRepository(),
            audit=AuditLogRepository(),
        )
