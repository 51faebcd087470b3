"""
Tests for configuration, credential encryption, the repository cache and
tenant scoping
"""

from django.core.cache import caches
from django.test import SimpleTestCase, TestCase, override_settings

from hotspot.cache import DjangoRepositoryCache
from hotspot.conf import CoreConfig
from hotspot.crypto import CredentialCipher
from hotspot.exceptions import ConfigurationError, EntityNotFound
from hotspot.models import SystemLog, Tenant

from .fakes import make_core, make_device, make_payment, make_tenant


class CoreConfigTest(SimpleTestCase):
    def test_from_settings(self):
        config = CoreConfig.from_settings()
        self.assertEqual(config.credentials_key, "test-credentials-key")
        self.assertEqual(config.device_timeout, 1)
        self.assertEqual(config.payment_job_max_attempts, 3)
        self.assertEqual(config.payment_job_deadline_seconds, 600)
        self.assertEqual(config.poll_cycle_timeout, 1.5)
        self.assertEqual(config.gateways, {"manual": {}})

    @override_settings(HOTSPOT={"PAYMENT_JOB_MAX_ATTEMPTS": "5", "CLEANUP_DELETE_DAYS": 0})
    def test_overrides_and_defaults(self):
        config = CoreConfig.from_settings()
        self.assertEqual(config.payment_job_max_attempts, 5)
        self.assertEqual(config.cleanup_delete_days, 0)
        self.assertEqual(config.cleanup_auto_disable_days, 30)


class CredentialCipherTest(SimpleTestCase):
    def test_round_trip_and_key_rotation(self):
        token = CredentialCipher("key-one").encrypt("router-pass")
        self.assertNotEqual(token, "router-pass")
        self.assertEqual(CredentialCipher("key-one").decrypt(token), "router-pass")
        with self.assertRaises(ConfigurationError):
            CredentialCipher("key-two").decrypt(token)

    def test_missing_key(self):
        with self.assertRaises(ConfigurationError):
            CredentialCipher("")


class RepositoryCacheTest(TestCase):
    def setUp(self):
        caches["default"].clear()
        self.cache = DjangoRepositoryCache("default", default_ttl=60)
        self.core = make_core(cache=self.cache)
        self.tenant = make_tenant(max_devices=3)
        self.tenant_id = str(self.tenant.id)

    def test_endpoint_cached_and_invalidated_on_write(self):
        device = make_device(self.core, self.tenant, host="10.0.0.1")
        devices = self.core.repositories.devices

        self.assertEqual(devices.get_endpoint(self.tenant_id, device.pk).host, "10.0.0.1")
        # A write that bypasses the repository is not seen until invalidation
        type(device).objects.filter(pk=device.pk).update(host="10.9.9.9")
        self.assertEqual(devices.get_endpoint(self.tenant_id, device.pk).host, "10.0.0.1")

        devices.update_connection_details(self.tenant_id, device.pk, host="10.0.0.2")
        self.assertEqual(devices.get_endpoint(self.tenant_id, device.pk).host, "10.0.0.2")

    def test_cached_password_stays_encrypted(self):
        device = make_device(self.core, self.tenant, password="top-secret")
        self.core.repositories.devices.get_endpoint(self.tenant_id, device.pk)
        key = f"tenant:{self.tenant_id}:device:{device.pk}:connection"
        cached = self.cache.get(key)
        self.assertNotIn("top-secret", str(cached))

    def test_tenant_context_invalidation(self):
        tenants = self.core.repositories.tenants
        self.assertEqual(tenants.get_context(self.tenant_id).max_devices, 3)
        Tenant.objects.filter(pk=self.tenant.pk).update(max_devices=10)
        self.assertEqual(tenants.get_context(self.tenant_id).max_devices, 3)
        tenants.invalidate(self.tenant_id)
        self.assertEqual(tenants.get_context(self.tenant_id).max_devices, 10)


class TenantScopingTest(TestCase):
    def setUp(self):
        self.core = make_core()
        self.acme = make_tenant("acme")
        self.other = make_tenant("other")

    def test_cross_tenant_reads_are_not_found(self):
        payment = make_payment(self.acme, transaction_id="PAY-A")
        device = make_device(self.core, self.acme)
        repos = self.core.repositories
        with self.assertRaises(EntityNotFound):
            repos.payments.get_by_transaction(str(self.other.id), "PAY-A")
        with self.assertRaises(EntityNotFound):
            repos.payments.get(str(self.other.id), payment.pk)
        with self.assertRaises(EntityNotFound):
            repos.devices.get_endpoint(str(self.other.id), device.pk)

    def test_resolve_slug(self):
        repos = self.core.repositories
        self.assertEqual(repos.tenants.resolve_slug("acme"), str(self.acme.id))
        with self.assertRaises(EntityNotFound):
            repos.tenants.resolve_slug("missing")

    def test_audit_record(self):
        entry = self.core.repositories.audit.record(
            str(self.acme.id), "device_status_change", "D-1 went offline", {"device_id": 1}, "warning"
        )
        self.assertEqual(SystemLog.objects.get().pk, entry.pk)
        self.assertEqual(self.core.repositories.audit.recent(str(self.acme.id))[0].severity, "warning")
