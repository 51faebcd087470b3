"""
Django settings for NetBill hotspot billing core
"""

from pathlib import Path
from decouple import config, Csv

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = config(
    "SECRET_KEY", default="django-insecure-netbill-dev-key-change-in-production"
)

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = config("DEBUG", default=False, cast=bool)

ALLOWED_HOSTS = config("ALLOWED_HOSTS", default="localhost,127.0.0.1", cast=Csv())

# Application definition
INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "django_crontab",  # For scheduled tasks
    "hotspot",
]

MIDDLEWARE = []

# Database
# MySQL by default (production), override DB_ENGINE for other backends
DATABASES = {
    "default": {
        "ENGINE": config("DB_ENGINE", default="django.db.backends.mysql"),
        "NAME": config("DB_NAME", default="netbill"),
        "USER": config("DB_USER", default="root"),
        "PASSWORD": config("DB_PASSWORD", default=""),
        "HOST": config("DB_HOST", default="localhost"),
        "PORT": config("DB_PORT", default="3306"),
        "OPTIONS": {
            "charset": "utf8mb4",
            "init_command": "SET sql_mode='STRICT_TRANS_TABLES'",
        },
    }
}

if DATABASES["default"]["ENGINE"] != "django.db.backends.mysql":
    DATABASES["default"]["OPTIONS"] = {}

CACHES = {
    "default": {
        "BACKEND": config(
            "CACHE_BACKEND", default="django.core.cache.backends.locmem.LocMemCache"
        ),
        "LOCATION": config("CACHE_LOCATION", default="netbill"),
    }
}

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = config("TIME_ZONE", default="Africa/Kampala")
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# =============================================================================
# HOTSPOT CORE CONFIGURATION
# =============================================================================
# Collected once into hotspot.conf.CoreConfig by hotspot.services.build_core().
# Core modules never read django.conf.settings directly.

HOTSPOT = {
    # Secret used to derive the Fernet key for router passwords at rest
    "DEVICE_CREDENTIALS_KEY": config("DEVICE_CREDENTIALS_KEY", default=SECRET_KEY),
    # Router connectivity
    "DEVICE_TIMEOUT": config("DEVICE_TIMEOUT", default=10, cast=int),
    "DEVICE_POLL_WORKERS": config("DEVICE_POLL_WORKERS", default=8, cast=int),
    "DEVICE_POLL_GRACE": config("DEVICE_POLL_GRACE", default=5, cast=float),
    "MIKROTIK_DEFAULT_PROFILE": config("MIKROTIK_DEFAULT_PROFILE", default="default"),
    "MIKROTIK_SSL_VERIFY": config("MIKROTIK_SSL_VERIFY", default=False, cast=bool),
    # Vouchers
    "VOUCHER_CODE_ATTEMPTS": config("VOUCHER_CODE_ATTEMPTS", default=10, cast=int),
    # Payment processing jobs (3 tries inside a 10 minute window)
    "PAYMENT_JOB_MAX_ATTEMPTS": config("PAYMENT_JOB_MAX_ATTEMPTS", default=3, cast=int),
    "PAYMENT_JOB_BACKOFF": config("PAYMENT_JOB_BACKOFF", default=60, cast=int),
    "PAYMENT_JOB_DEADLINE": config("PAYMENT_JOB_DEADLINE", default=600, cast=int),
    "JOB_LOCK_TIMEOUT": config("JOB_LOCK_TIMEOUT", default=300, cast=int),
    # Cleanup policy defaults
    "CLEANUP_AUTO_DISABLE_DAYS": config("CLEANUP_AUTO_DISABLE_DAYS", default=30, cast=int),
    "CLEANUP_DELETE_DAYS": config("CLEANUP_DELETE_DAYS", default=90, cast=int),
    "CLEANUP_NOTIFY": config("CLEANUP_NOTIFY", default=True, cast=bool),
    # Outbound event webhook (optional, events are always logged)
    "EVENT_WEBHOOK_URL": config("EVENT_WEBHOOK_URL", default=""),
    "EVENT_WEBHOOK_SECRET": config("EVENT_WEBHOOK_SECRET", default=""),
    "EVENT_WEBHOOK_TIMEOUT": config("EVENT_WEBHOOK_TIMEOUT", default=10, cast=int),
    "EVENT_WORKERS": config("EVENT_WORKERS", default=2, cast=int),
    # Repository read cache
    "REPOSITORY_CACHE_ALIAS": "default",
    "REPOSITORY_CACHE_TTL": config("REPOSITORY_CACHE_TTL", default=300, cast=int),
    # Payment gateways enabled at startup: {provider: {config}}
    "PAYMENT_GATEWAYS": {
        provider: {}
        for provider in config("PAYMENT_GATEWAYS", default="manual", cast=Csv())
    },
}

# Production Logging
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
        "file": {
            "class": "logging.FileHandler",
            "filename": LOGS_DIR / "netbill.log",
            "formatter": "verbose",
            "delay": True,
        },
        "audit_file": {
            "class": "logging.FileHandler",
            "filename": LOGS_DIR / "audit.log",
            "formatter": "verbose",
            "delay": True,
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO" if DEBUG else "WARNING",
    },
    "loggers": {
        "django": {
            "handlers": ["console", "file"] if not DEBUG else ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "hotspot": {
            "handlers": ["console", "file"] if not DEBUG else ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "hotspot.audit": {
            "handlers": ["console", "audit_file"] if not DEBUG else ["console"],
            "level": "INFO",
            "propagate": False,
        },
    },
}

# =============================================================================
# SCHEDULED TASKS (django-crontab)
# =============================================================================
# Install with: python manage.py crontab add

CRONJOBS = [
    # Poll every registered router and record online/offline/error status
    (
        "*/5 * * * *",
        "hotspot.tasks.poll_devices",
        ">> /var/log/netbill_cron.log 2>&1",
    ),
    # Expire active vouchers whose validity window has passed
    (
        "*/5 * * * *",
        "hotspot.tasks.expire_vouchers",
        ">> /var/log/netbill_cron.log 2>&1",
    ),
    # Drain due background jobs (payment processing, provisioning)
    (
        "* * * * *",
        "hotspot.tasks.process_due_jobs",
        ">> /var/log/netbill_cron.log 2>&1",
    ),
    # Apply voucher retention policy daily at 2:30 AM
    (
        "30 2 * * *",
        "hotspot.tasks.cleanup_vouchers",
        ">> /var/log/netbill_cron.log 2>&1",
    ),
]

# For development/testing, you can also manually run:
# python manage.py cleanup_vouchers --dry-run
# python manage.py monitor_devices
