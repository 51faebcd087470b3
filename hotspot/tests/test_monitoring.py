"""
Tests for the device poll loop
"""

import time
from dataclasses import replace

from django.test import TestCase

from hotspot.devices import DeviceStatus, classify_failure, parse_uptime
from hotspot.events import DeviceStatusChanged
from hotspot.exceptions import ConnectivityError, FailureKind
from hotspot.models import NetworkDevice, SystemLog

from .fakes import TEST_CONFIG, FakeDeviceAdapter, RecordingPublisher, make_core, make_device, make_tenant


class DevicePollTest(TestCase):
    def setUp(self):
        self.adapter = FakeDeviceAdapter()
        self.publisher = RecordingPublisher()
        self.core = make_core(self.adapter, self.publisher)
        self.tenant = make_tenant()
        self.tenant_id = str(self.tenant.id)

    def tearDown(self):
        self.adapter.release.set()

    def test_online_poll_updates_health(self):
        device = make_device(self.core, self.tenant)
        self.adapter.statuses[device.host] = DeviceStatus.online(
            {"uptime_seconds": 7200, "identity": "core-1", "version": "7.12", "board_name": "hAP ax2"}
        )

        report = self.core.monitor.poll_device(self.tenant_id, device.pk)

        self.assertEqual(report.online, 1)
        device.refresh_from_db()
        self.assertEqual(device.status, "online")
        self.assertIsNotNone(device.last_seen)
        self.assertEqual(device.uptime_seconds, 7200)
        self.assertEqual(device.identity, "core-1")
        self.assertEqual(device.router_model, "hAP ax2")
        self.assertEqual(device.consecutive_failures, 0)

    def test_failure_kinds_map_to_status(self):
        """Test timeouts and refusals go offline, auth/protocol failures go to error"""
        cases = {
            "10.0.0.1": (FailureKind.TIMEOUT, "offline"),
            "10.0.0.2": (FailureKind.UNREACHABLE, "offline"),
            "10.0.0.3": (FailureKind.AUTH_FAILURE, "error"),
            "10.0.0.4": (FailureKind.PROTOCOL_ERROR, "error"),
        }
        devices = {}
        for index, (host, (kind, _)) in enumerate(cases.items()):
            devices[host] = make_device(self.core, self.tenant, name=f"D-{index}", host=host)
            self.adapter.statuses[host] = DeviceStatus.failed(kind, kind.value)

        report = self.core.monitor.poll_tenant(self.tenant_id)

        self.assertEqual(report.offline, 2)
        self.assertEqual(report.error, 2)
        for host, (kind, status) in cases.items():
            device = NetworkDevice.objects.get(pk=devices[host].pk)
            self.assertEqual(device.status, status)
            self.assertEqual(device.last_failure_kind, kind.value)

    def test_transition_to_failure_is_audited_and_published(self):
        device = make_device(self.core, self.tenant)
        self.core.monitor.poll_device(self.tenant_id, device.pk)
        self.adapter.unreachable.add(device.host)

        self.core.monitor.poll_device(self.tenant_id, device.pk)

        failure = SystemLog.objects.get(log_type="device_connection_failure")
        self.assertEqual(failure.severity, "warning")
        self.assertEqual(failure.data["failure_kind"], "unreachable")
        self.assertEqual(SystemLog.objects.filter(log_type="device_status_change").count(), 2)
        events = self.publisher.of_type(DeviceStatusChanged)
        self.assertEqual([(e.previous_status, e.status) for e in events], [("offline", "online"), ("online", "offline")])
        self.assertTrue(all(e.action == "updated" for e in events))

    def test_repeated_failure_not_reaudited(self):
        device = make_device(self.core, self.tenant)
        self.adapter.unreachable.add(device.host)
        self.core.monitor.poll_device(self.tenant_id, device.pk)
        self.core.monitor.poll_device(self.tenant_id, device.pk)

        device.refresh_from_db()
        self.assertEqual(device.consecutive_failures, 2)
        # offline -> offline is not a transition
        self.assertFalse(SystemLog.objects.filter(log_type="device_connection_failure").exists())
        self.assertEqual(self.publisher.events, [])

    def test_hanging_device_does_not_block_fleet(self):
        """Test one hung router times out while the other four are still updated"""
        devices = [
            make_device(self.core, self.tenant, name=f"D-{i}", host=f"10.0.0.{i}") for i in range(1, 6)
        ]
        self.adapter.hanging.add("10.0.0.3")

        started = time.monotonic()
        report = self.core.monitor.poll_tenant(self.tenant_id)
        elapsed = time.monotonic() - started

        self.assertLess(elapsed, self.core.config.poll_cycle_timeout + 2)
        self.assertEqual(report.online, 4)
        self.assertEqual(report.offline, 1)
        for device in devices:
            device.refresh_from_db()
            expected = "offline" if device.host == "10.0.0.3" else "online"
            self.assertEqual(device.status, expected)
        hung = NetworkDevice.objects.get(host="10.0.0.3")
        self.assertEqual(hung.last_failure_kind, "timeout")

    def test_queued_device_keeps_status_when_workers_are_hung(self):
        """Test a router queued behind hung ones is skipped, not marked offline"""
        core = make_core(self.adapter, self.publisher, config=replace(TEST_CONFIG, poll_workers=2))
        make_device(core, self.tenant, name="A-hung", host="10.0.0.1")
        make_device(core, self.tenant, name="B-hung", host="10.0.0.2")
        healthy = make_device(core, self.tenant, name="C-ok", host="10.0.0.3")
        core.monitor.poll_tenant(self.tenant_id)
        self.adapter.hanging.update({"10.0.0.1", "10.0.0.2"})
        self.adapter.queried.clear()

        report = core.monitor.poll_tenant(self.tenant_id)

        self.assertEqual(report.offline, 2)
        self.assertEqual([s["name"] for s in report.skipped], ["C-ok"])
        self.assertEqual(report.as_dict()["not_polled"][0]["error"], "not polled this cycle")
        self.assertNotIn("10.0.0.3", self.adapter.queried)
        healthy.refresh_from_db()
        self.assertEqual(healthy.status, "online")
        self.assertEqual(healthy.last_failure_kind, "")
        for name in ("A-hung", "B-hung"):
            self.assertEqual(NetworkDevice.objects.get(name=name).last_failure_kind, "timeout")
        failures = SystemLog.objects.filter(log_type="device_connection_failure")
        self.assertEqual(failures.count(), 2)
        self.assertNotIn(healthy.pk, [log.data["device_id"] for log in failures])

    def test_poll_all_shares_one_deadline_across_tenants(self):
        """Test hung routers in two tenants cost one cycle deadline, not one per tenant"""
        other = make_tenant("other")
        make_device(self.core, self.tenant, name="A-hung", host="10.0.0.1")
        make_device(self.core, self.tenant, name="B-ok", host="10.0.0.2")
        make_device(self.core, other, name="C-hung", host="10.1.0.1")
        make_device(self.core, other, name="D-ok", host="10.1.0.2")
        self.adapter.hanging.update({"10.0.0.1", "10.1.0.1"})

        started = time.monotonic()
        report = self.core.monitor.poll_all()
        elapsed = time.monotonic() - started

        self.assertLess(elapsed, self.core.config.poll_cycle_timeout + 1)
        self.assertEqual(report.online, 2)
        self.assertEqual(report.offline, 2)
        self.assertEqual(NetworkDevice.objects.get(name="C-hung").tenant_id, other.id)
        self.assertEqual(NetworkDevice.objects.get(name="C-hung").last_failure_kind, "timeout")
        self.assertEqual(NetworkDevice.objects.get(name="D-ok").status, "online")

    def test_adapter_exception_is_contained(self):
        class ExplodingAdapter(FakeDeviceAdapter):
            def query_status(self, endpoint, timeout):
                if endpoint.host == "10.0.0.1":
                    raise RuntimeError("unexpected reply")
                return super().query_status(endpoint, timeout)

        core = make_core(ExplodingAdapter(), self.publisher)
        make_device(core, self.tenant, name="bad", host="10.0.0.1")
        make_device(core, self.tenant, name="good", host="10.0.0.2")

        report = core.monitor.poll_tenant(self.tenant_id)

        self.assertEqual(report.online, 1)
        self.assertEqual(report.error, 1)
        self.assertEqual(NetworkDevice.objects.get(name="bad").last_failure_kind, "protocol_error")

    def test_inactive_devices_skipped(self):
        make_device(self.core, self.tenant, name="off", host="10.0.0.8")
        NetworkDevice.objects.filter(name="off").update(is_active=False)
        report = self.core.monitor.poll_tenant(self.tenant_id)
        self.assertEqual(report.results, [])
        self.assertEqual(self.adapter.queried, [])

    def test_poll_all_spans_tenants(self):
        other = make_tenant("other")
        make_device(self.core, self.tenant)
        make_device(self.core, other, name="D-1", host="10.1.0.1")
        make_tenant("dormant", is_active=False)

        report = self.core.monitor.poll_all()
        self.assertEqual(report.as_dict()["total"], 2)

    def test_initialize_device_job(self):
        device = make_device(self.core, self.tenant)
        result = self.core.monitor.initialize_device_job(self.tenant_id, {"device_id": device.pk})
        self.assertEqual(result["online"], 1)


class FailureClassificationTest(TestCase):
    def test_classify(self):
        self.assertEqual(classify_failure(TimeoutError()), FailureKind.TIMEOUT)
        self.assertEqual(classify_failure(ConnectionRefusedError()), FailureKind.UNREACHABLE)
        self.assertEqual(
            classify_failure(Exception("invalid user name or password (6)")), FailureKind.AUTH_FAILURE
        )
        self.assertEqual(classify_failure(ValueError("garbage")), FailureKind.PROTOCOL_ERROR)
        self.assertEqual(
            classify_failure(ConnectivityError("x", FailureKind.AUTH_FAILURE)), FailureKind.AUTH_FAILURE
        )

    def test_parse_uptime(self):
        self.assertEqual(parse_uptime("1w2d3h4m5s"), 604800 + 2 * 86400 + 3 * 3600 + 4 * 60 + 5)
        self.assertEqual(parse_uptime(""), 0)
