"""
Explicit configuration for the hotspot core.

``CoreConfig`` is built once at the composition root and passed into every
service constructor. Nothing below the composition root looks at
``django.conf.settings``.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass(frozen=True)
class CoreConfig:
    credentials_key: str = ""

    # Router connectivity
    device_timeout: int = 10
    poll_workers: int = 8
    poll_grace_seconds: float = 5
    default_profile: str = "default"
    ssl_verify: bool = False

    # Vouchers
    code_generation_attempts: int = 10

    # Background jobs
    payment_job_max_attempts: int = 3
    payment_job_backoff_seconds: int = 60
    payment_job_deadline_seconds: int = 600
    job_lock_timeout_seconds: int = 300

    # Cleanup policy defaults
    cleanup_auto_disable_days: int = 30
    cleanup_delete_days: int = 90
    cleanup_notify: bool = True

    # Events
    event_webhook_url: str = ""
    event_webhook_secret: str = ""
    event_webhook_timeout: int = 10
    event_workers: int = 2

    # Repository cache
    cache_alias: str = "default"
    cache_ttl: int = 300

    gateways: Dict[str, dict] = field(default_factory=dict)

    @property
    def poll_cycle_timeout(self) -> float:
        """Upper bound on one fleet poll cycle"""
        return self.device_timeout + self.poll_grace_seconds

    @classmethod
    def from_settings(cls, settings_obj=None) -> "CoreConfig":
        """Build config from the ``HOTSPOT`` settings dict."""
        if settings_obj is None:
            from django.conf import settings as settings_obj

        values: Optional[dict] = getattr(settings_obj, "HOTSPOT", None) or {}
        defaults = cls()

        def get(key, default):
            return values.get(key, default)

        return cls(
            credentials_key=get(
                "DEVICE_CREDENTIALS_KEY", getattr(settings_obj, "SECRET_KEY", "")
            ),
            device_timeout=int(get("DEVICE_TIMEOUT", defaults.device_timeout)),
            poll_workers=int(get("DEVICE_POLL_WORKERS", defaults.poll_workers)),
            poll_grace_seconds=float(
                get("DEVICE_POLL_GRACE", defaults.poll_grace_seconds)
            ),
            default_profile=get("MIKROTIK_DEFAULT_PROFILE", defaults.default_profile),
            ssl_verify=bool(get("MIKROTIK_SSL_VERIFY", defaults.ssl_verify)),
            code_generation_attempts=int(
                get("VOUCHER_CODE_ATTEMPTS", defaults.code_generation_attempts)
            ),
            payment_job_max_attempts=int(
                get("PAYMENT_JOB_MAX_ATTEMPTS", defaults.payment_job_max_attempts)
            ),
            payment_job_backoff_seconds=int(
                get("PAYMENT_JOB_BACKOFF", defaults.payment_job_backoff_seconds)
            ),
            payment_job_deadline_seconds=int(
                get("PAYMENT_JOB_DEADLINE", defaults.payment_job_deadline_seconds)
            ),
            job_lock_timeout_seconds=int(
                get("JOB_LOCK_TIMEOUT", defaults.job_lock_timeout_seconds)
            ),
            cleanup_auto_disable_days=int(
                get("CLEANUP_AUTO_DISABLE_DAYS", defaults.cleanup_auto_disable_days)
            ),
            cleanup_delete_days=int(
                get("CLEANUP_DELETE_DAYS", defaults.cleanup_delete_days)
            ),
            cleanup_notify=bool(get("CLEANUP_NOTIFY", defaults.cleanup_notify)),
            event_webhook_url=get("EVENT_WEBHOOK_URL", defaults.event_webhook_url),
            event_webhook_secret=get(
                "EVENT_WEBHOOK_SECRET", defaults.event_webhook_secret
            ),
            event_webhook_timeout=int(
                get("EVENT_WEBHOOK_TIMEOUT", defaults.event_webhook_timeout)
            ),
            event_workers=int(get("EVENT_WORKERS", defaults.event_workers)),
            cache_alias=get("REPOSITORY_CACHE_ALIAS", defaults.cache_alias),
            cache_ttl=int(get("REPOSITORY_CACHE_TTL", defaults.cache_ttl)),
            gateways=dict(get("PAYMENT_GATEWAYS", {"manual": {}})),
        )
