"""
Database models for the NetBill hotspot billing core
"""

import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import timedelta

from django.db import models
from django.utils import timezone

from .exceptions import FailureKind, InvalidStateError

logger = logging.getLogger(__name__)

VOUCHER_CODE_ALPHABET = string.ascii_uppercase + string.digits
VOUCHER_PASSWORD_ALPHABET = string.ascii_letters + string.digits

REFUND_WINDOW_DAYS = 30


@dataclass(frozen=True)
class TenantContext:
    """What the core needs to know about the tenant it is acting for"""

    tenant_id: str
    slug: str
    max_devices: int
    voucher_prefix: str
    currency: str


class Tenant(models.Model):
    """
    Tenant model - a hotspot operator.
    Tenant administration lives outside the core; this is the minimal record
    every other table is scoped by.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    slug = models.SlugField(max_length=50, unique=True, db_index=True)
    business_name = models.CharField(max_length=200)
    voucher_prefix = models.CharField(max_length=8, default="BIL")
    default_currency = models.CharField(max_length=3, default="UGX")
    max_devices = models.PositiveIntegerField(default=5)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["business_name"]

    def __str__(self):
        return f"{self.business_name} ({self.slug})"

    def context(self) -> TenantContext:
        return TenantContext(
            tenant_id=str(self.id),
            slug=self.slug,
            max_devices=self.max_devices,
            voucher_prefix=self.voucher_prefix,
            currency=self.default_currency,
        )


class NetworkDevice(models.Model):
    """
    A tenant's router / hotspot controller.
    ``status`` is owned by the polling loop; connection details and
    configuration are changed through the device manager.
    """

    STATUS_CHOICES = [
        ("online", "Online"),
        ("offline", "Offline"),
        ("error", "Error"),
    ]

    FAILURE_KIND_CHOICES = [
        (kind.value, kind.value.replace("_", " ").title()) for kind in FailureKind
    ]

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="devices")
    name = models.CharField(max_length=100)

    # Connection
    host = models.CharField(max_length=255)
    port = models.PositiveIntegerField(default=8728)
    username = models.CharField(max_length=100)
    password_encrypted = models.TextField(blank=True)
    use_ssl = models.BooleanField(default=False)

    # Health (written by the poll loop only)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="offline")
    last_seen = models.DateTimeField(null=True, blank=True)
    uptime_seconds = models.BigIntegerField(default=0)
    last_error = models.TextField(blank=True)
    last_failure_kind = models.CharField(
        max_length=20, choices=FAILURE_KIND_CHOICES, blank=True
    )
    consecutive_failures = models.PositiveIntegerField(default=0)

    # Router info
    identity = models.CharField(max_length=100, blank=True)
    router_version = models.CharField(max_length=50, blank=True)
    router_model = models.CharField(max_length=100, blank=True)

    # Configuration snapshots
    configuration = models.JSONField(null=True, blank=True)
    backup_configuration = models.JSONField(null=True, blank=True)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        unique_together = ["tenant", "name"]
        indexes = [
            models.Index(fields=["tenant", "status"], name="device_tenant_status_idx"),
        ]

    def __str__(self):
        return f"{self.name} ({self.host}:{self.port}) - {self.status}"

    def mark_online(self, metrics: dict, now=None):
        """Record a successful poll"""
        metrics = metrics or {}
        self.status = "online"
        self.last_seen = now or timezone.now()
        self.uptime_seconds = int(metrics.get("uptime_seconds", self.uptime_seconds) or 0)
        self.identity = metrics.get("identity") or self.identity
        self.router_version = metrics.get("version") or self.router_version
        self.router_model = metrics.get("board_name") or self.router_model
        self.last_error = ""
        self.last_failure_kind = ""
        self.consecutive_failures = 0
        self.save(
            update_fields=[
                "status",
                "last_seen",
                "uptime_seconds",
                "identity",
                "router_version",
                "router_model",
                "last_error",
                "last_failure_kind",
                "consecutive_failures",
                "updated_at",
            ]
        )

    def mark_failed(self, kind: FailureKind, error: str = ""):
        """Record a failed poll; timeouts and refusals leave the device offline"""
        kind = FailureKind(kind)
        self.status = kind.device_status
        self.last_error = error[:1000]
        self.last_failure_kind = kind.value
        self.consecutive_failures += 1
        self.save(
            update_fields=[
                "status",
                "last_error",
                "last_failure_kind",
                "consecutive_failures",
                "updated_at",
            ]
        )


class Payment(models.Model):
    """
    Payment transaction for hotspot access.
    A completed payment yields exactly one voucher (see ``Voucher.payment``).
    """

    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("completed", "Completed"),
        ("failed", "Failed"),
        ("refunded", "Refunded"),
        ("cancelled", "Cancelled"),
    ]

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="payments")
    transaction_id = models.CharField(max_length=100, unique=True)
    reference = models.CharField(max_length=100, blank=True)
    provider = models.CharField(max_length=30, default="manual")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default="UGX")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")

    # Hotspot the purchase was made from, used as the provisioning target
    device = models.ForeignKey(
        NetworkDevice,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )
    customer_phone = models.CharField(max_length=20, blank=True)

    gateway_response = models.JSONField(default=dict, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    audit_trail = models.JSONField(default=list, blank=True)

    paid_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True)

    # Set once the payment has been issued its voucher; outlives the voucher row
    voucher_issued_at = models.DateTimeField(null=True, blank=True)

    # Dispute metadata
    disputed_at = models.DateTimeField(null=True, blank=True)
    dispute_reason = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["tenant", "status"], name="payment_tenant_status_idx"),
        ]

    def __str__(self):
        return f"{self.transaction_id} - {self.currency} {self.amount} - {self.status}"

    def add_audit_entry(self, event: str, **detail):
        self.audit_trail = list(self.audit_trail or []) + [
            {"at": timezone.now().isoformat(), "event": event, "detail": detail}
        ]

    def update_gateway_response(self, response: dict):
        """Shallow-merge a gateway payload into the stored response"""
        merged = dict(self.gateway_response or {})
        merged.update(response or {})
        self.gateway_response = merged

    def mark_completed(self, reference: str = None, gateway_response: dict = None) -> bool:
        """Mark payment as completed (idempotent). Returns False if it already was."""
        if self.status == "completed" and self.paid_at:
            logger.info(
                f"Payment {self.transaction_id} already marked completed, skipping duplicate processing"
            )
            return False
        if self.status != "pending":
            raise InvalidStateError("payment", self.status, "complete")

        self.status = "completed"
        self.paid_at = timezone.now()
        if reference:
            self.reference = reference
        if gateway_response:
            self.update_gateway_response(gateway_response)
        self.add_audit_entry("completed", reference=self.reference)
        self.save()
        return True

    def mark_voucher_issued(self):
        self.voucher_issued_at = timezone.now()
        self.save(update_fields=["voucher_issued_at", "updated_at"])

    def mark_failed(self, reason: str = "", gateway_response: dict = None) -> bool:
        if self.status == "failed":
            return False
        if self.status != "pending":
            raise InvalidStateError("payment", self.status, "fail")

        self.status = "failed"
        self.failed_at = timezone.now()
        self.failure_reason = reason
        if gateway_response:
            self.update_gateway_response(gateway_response)
        self.add_audit_entry("failed", reason=reason)
        self.save()
        return True

    def mark_cancelled(self):
        if self.status != "pending":
            raise InvalidStateError("payment", self.status, "cancel")
        self.status = "cancelled"
        self.add_audit_entry("cancelled")
        self.save()

    @property
    def is_refundable(self) -> bool:
        return (
            self.status == "completed"
            and self.paid_at is not None
            and self.paid_at >= timezone.now() - timedelta(days=REFUND_WINDOW_DAYS)
        )

    def mark_refunded(self, amount=None):
        if self.status != "completed":
            raise InvalidStateError("payment", self.status, "refund")
        self.status = "refunded"
        self.refunded_at = timezone.now()
        self.add_audit_entry(
            "refunded", amount=str(amount if amount is not None else self.amount)
        )
        self.save()

    def open_dispute(self, reason: str):
        if self.status not in ("completed", "refunded"):
            raise InvalidStateError("payment", self.status, "dispute")
        self.disputed_at = timezone.now()
        self.dispute_reason = reason
        self.add_audit_entry("disputed", reason=reason)
        self.save()


class Voucher(models.Model):
    """
    Voucher - a purchased, time/data bounded access grant.

    Lifecycle: pending -> active -> used | expired | disabled.
    Terminal states never go back; ``renew`` only extends an active voucher.
    Transition methods check the current state, mutate and save. Callers
    that may race hold a row lock (see ``VoucherService``).
    """

    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("active", "Active"),
        ("used", "Used"),
        ("expired", "Expired"),
        ("disabled", "Disabled"),
    ]

    TERMINAL_STATES = ("used", "expired", "disabled")

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="vouchers")
    # One voucher per payment, enforced by the database
    payment = models.OneToOneField(
        Payment, on_delete=models.PROTECT, related_name="voucher"
    )

    code = models.CharField(max_length=32)
    password = models.CharField(max_length=32)
    profile = models.CharField(max_length=50, default="DEFAULT")
    validity_hours = models.PositiveIntegerField(default=24)
    data_limit_mb = models.PositiveIntegerField(null=True, blank=True)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default="UGX")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")

    activated_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    used_at = models.DateTimeField(null=True, blank=True)
    notification_sent_at = models.DateTimeField(null=True, blank=True)

    usage_stats = models.JSONField(default=dict, blank=True)
    device_metadata = models.JSONField(default=dict, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "code"], name="unique_voucher_code_per_tenant"
            ),
        ]
        indexes = [
            models.Index(fields=["tenant", "status"], name="voucher_tenant_status_idx"),
            models.Index(fields=["status", "expires_at"], name="voucher_status_expiry_idx"),
        ]

    def __str__(self):
        return f"{self.code} - {self.profile} - {self.status}"

    @staticmethod
    def random_code(prefix: str = "BIL") -> str:
        """Format: PREFIX-XXXX-XXXX"""
        segments = [
            "".join(secrets.choice(VOUCHER_CODE_ALPHABET) for _ in range(4))
            for _ in range(2)
        ]
        return "-".join([prefix.upper()] + segments)

    @staticmethod
    def generate_code(tenant_id, prefix: str = "BIL", max_attempts: int = 10):
        """Generate a voucher code not yet used in the tenant's namespace"""
        for _ in range(max_attempts):
            code = Voucher.random_code(prefix)
            if not Voucher.objects.filter(tenant_id=tenant_id, code=code).exists():
                return code
        return None

    @staticmethod
    def generate_password(length: int = 8) -> str:
        return "".join(secrets.choice(VOUCHER_PASSWORD_ALPHABET) for _ in range(length))

    # ------------------------------------------------------------------
    # Derived values (never persisted)
    # ------------------------------------------------------------------

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= timezone.now()

    @property
    def is_usable(self) -> bool:
        return self.status == "active" and self.used_at is None and not self.is_expired

    @property
    def remaining_time(self):
        if self.expires_at is None:
            return None
        return max(self.expires_at - timezone.now(), timedelta(0))

    @property
    def remaining_hours(self) -> float:
        remaining = self.remaining_time
        if remaining is None:
            return 0
        return round(remaining.total_seconds() / 3600, 2)

    @property
    def data_limit_display(self) -> str:
        if not self.data_limit_mb:
            return "Unlimited"
        if self.data_limit_mb >= 1024:
            return f"{self.data_limit_mb / 1024:g} GB"
        return f"{self.data_limit_mb} MB"

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _require(self, operation: str, *states):
        if self.status not in states:
            raise InvalidStateError("voucher", self.status, operation)

    def activate(self, now=None):
        """
        Start the validity window. Only a pending voucher can be activated,
        so a second call never resets ``expires_at``.
        """
        self._require("activate", "pending")
        now = now or timezone.now()
        self.status = "active"
        self.activated_at = now
        self.expires_at = now + timedelta(hours=self.validity_hours)
        self.save(update_fields=["status", "activated_at", "expires_at", "updated_at"])

    def mark_as_used(self, now=None):
        self._require("mark as used", "active")
        now = now or timezone.now()
        if self.expires_at and self.expires_at <= now:
            raise InvalidStateError("voucher", self.status, "mark as used", "voucher has expired")
        self.status = "used"
        self.used_at = now
        self.save(update_fields=["status", "used_at", "updated_at"])

    def mark_as_expired(self, now=None):
        self._require("expire", "active")
        now = now or timezone.now()
        if self.expires_at is None or self.expires_at > now:
            raise InvalidStateError(
                "voucher", self.status, "expire", f"still valid until {self.expires_at}"
            )
        self.status = "expired"
        self.save(update_fields=["status", "updated_at"])

    def disable(self, reason: str = ""):
        """Administrative override; usage stats are kept"""
        self._require("disable", "pending", "active")
        self.status = "disabled"
        if reason:
            self.metadata = {**(self.metadata or {}), "disabled_reason": reason}
        self.save(update_fields=["status", "metadata", "updated_at"])

    def retire(self, reason: str = "retention_policy"):
        """Retention-policy move of an expired voucher to disabled"""
        self._require("retire", "expired")
        self.status = "disabled"
        self.metadata = {**(self.metadata or {}), "disabled_reason": reason}
        self.save(update_fields=["status", "metadata", "updated_at"])

    def renew(self, additional_hours: int):
        self._require("renew", "active")
        if additional_hours <= 0:
            raise InvalidStateError(
                "voucher", self.status, "renew", "additional hours must be positive"
            )
        self.expires_at = self.expires_at + timedelta(hours=additional_hours)
        self.validity_hours += additional_hours
        self.save(update_fields=["expires_at", "validity_hours", "updated_at"])

    def record_usage(self, stats: dict):
        """Shallow-merge usage counters; keys absent from ``stats`` are kept"""
        merged = dict(self.usage_stats or {})
        merged.update(stats or {})
        merged["last_updated"] = timezone.now().isoformat()
        self.usage_stats = merged
        self.save(update_fields=["usage_stats", "updated_at"])

    def mark_notification_sent(self, now=None):
        self.notification_sent_at = now or timezone.now()
        self.save(update_fields=["notification_sent_at", "updated_at"])


class DeviceUser(models.Model):
    """
    Device-side hotspot login. Binds at most one voucher to a router account.
    """

    device = models.ForeignKey(
        NetworkDevice, on_delete=models.CASCADE, related_name="users"
    )
    username = models.CharField(max_length=100)
    password = models.CharField(max_length=100, blank=True)
    profile = models.CharField(max_length=50, default="default")
    voucher = models.OneToOneField(
        Voucher,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="device_user",
    )
    is_active = models.BooleanField(default=True)
    last_synced_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["username"]
        unique_together = ["device", "username"]

    def __str__(self):
        return f"{self.username}@{self.device.name}"


class ConfigHistory(models.Model):
    """
    Append-only log of device configuration snapshots.
    A null ``changed_by`` marks a system-initiated change.
    """

    CHANGE_TYPE_CHOICES = [
        ("backup", "Backup"),
        ("restore", "Restore"),
        ("update", "Update"),
    ]

    device = models.ForeignKey(
        NetworkDevice, on_delete=models.CASCADE, related_name="config_history"
    )
    configuration_data = models.JSONField()
    change_type = models.CharField(max_length=10, choices=CHANGE_TYPE_CHOICES)
    changed_by = models.CharField(max_length=100, null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["created_at", "id"]
        verbose_name_plural = "Config history"

    def __str__(self):
        return f"{self.device_id} {self.change_type} @ {self.created_at}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise InvalidStateError("config history entry", "recorded", "modify")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise InvalidStateError("config history entry", "recorded", "delete")


class SystemLog(models.Model):
    """Operator-visible audit channel"""

    SEVERITY_CHOICES = [
        ("info", "Info"),
        ("warning", "Warning"),
        ("critical", "Critical"),
    ]

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="system_logs",
    )
    log_type = models.CharField(max_length=50, db_index=True)
    severity = models.CharField(max_length=10, choices=SEVERITY_CHOICES, default="info")
    message = models.TextField(blank=True)
    data = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["tenant", "log_type"], name="syslog_tenant_type_idx"),
            models.Index(fields=["severity", "created_at"], name="syslog_severity_idx"),
        ]

    def __str__(self):
        return f"[{self.severity}] {self.log_type}: {self.message[:60]}"


class BackgroundJob(models.Model):
    """Durable task queue entry, claimed by workers with row locks"""

    KIND_CHOICES = [
        ("process_payment", "Process payment"),
        ("provision_voucher", "Provision voucher"),
        ("revoke_voucher", "Revoke voucher"),
        ("initialize_device", "Initialize device monitoring"),
    ]

    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("running", "Running"),
        ("retrying", "Retrying"),
        ("succeeded", "Succeeded"),
        ("failed", "Failed"),
    ]

    tenant = models.ForeignKey(
        Tenant, on_delete=models.CASCADE, null=True, blank=True, related_name="jobs"
    )
    kind = models.CharField(max_length=30, choices=KIND_CHOICES)
    payload = models.JSONField(default=dict, blank=True)
    dedupe_key = models.CharField(max_length=150, unique=True, null=True, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    attempts = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=3)
    next_run_at = models.DateTimeField(default=timezone.now)
    deadline_at = models.DateTimeField(null=True, blank=True)

    locked_by = models.CharField(max_length=100, blank=True)
    locked_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True)
    result = models.JSONField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["next_run_at", "id"]
        indexes = [
            models.Index(fields=["status", "next_run_at"], name="job_status_next_run_idx"),
        ]

    def __str__(self):
        return f"{self.kind} #{self.pk} ({self.status}, {self.attempts}/{self.max_attempts})"

    @property
    def past_deadline(self) -> bool:
        return self.deadline_at is not None and timezone.now() >= self.deadline_at

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts or self.past_deadline
