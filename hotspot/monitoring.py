"""
Device state reconciliation loop.

Each cycle queries the active routers of one tenant, or of every tenant at
once, in parallel. The network calls run on a thread pool with an overall
deadline; status writes happen on the calling thread as results arrive, one
short transaction per device, so a hung router costs at most the cycle
deadline and never blocks the others. Routers still queued when the
deadline passes keep their last known status.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
from dataclasses import dataclass, field
from typing import List, Optional

from django.db import transaction

from .devices import DeviceAdapter, DeviceEndpoint, DeviceStatus, classify_failure
from .events import DeviceStatusChanged, EventPublisher
from .exceptions import EntityNotFound, FailureKind

logger = logging.getLogger(__name__)


@dataclass
class DevicePollResult:
    device_id: int
    name: str
    status: str
    previous_status: Optional[str] = None
    failure_kind: Optional[str] = None
    error: str = ""

    @property
    def changed(self) -> bool:
        return self.previous_status is not None and self.previous_status != self.status


@dataclass
class PollReport:
    results: List[DevicePollResult] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)
    # Devices whose query never started before the cycle deadline
    skipped: List[dict] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def online(self) -> int:
        return self.count("online")

    @property
    def offline(self) -> int:
        return self.count("offline")

    @property
    def error(self) -> int:
        return self.count("error")

    def as_dict(self) -> dict:
        return {
            "success": True,
            "total": len(self.results),
            "online": self.online,
            "offline": self.offline,
            "error": self.error,
            "errors": list(self.errors),
            "not_polled": list(self.skipped),
        }


class DeviceMonitor:
    def __init__(self, repositories, adapter: DeviceAdapter, publisher: EventPublisher, config):
        self.repos = repositories
        self.adapter = adapter
        self.publisher = publisher
        self.config = config

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def poll_all(self) -> PollReport:
        """One cycle over every active tenant's routers, sharing a single deadline"""
        report = PollReport()
        endpoints = []
        for tenant_id in self.repos.tenants.active_tenant_ids():
            try:
                endpoints.extend(self._collect_endpoints(tenant_id, report))
            except Exception as e:
                logger.error(f"Listing devices for tenant {tenant_id} failed: {e}", exc_info=True)
                report.errors.append({"tenant_id": tenant_id, "error": str(e)})
        return self._poll_endpoints(endpoints, report)

    def poll_tenant(self, tenant_id) -> PollReport:
        report = PollReport()
        endpoints = self._collect_endpoints(tenant_id, report)
        return self._poll_endpoints(endpoints, report)

    def poll_device(self, tenant_id, device_id) -> PollReport:
        endpoint = self.repos.devices.get_endpoint(tenant_id, device_id)
        return self._poll_endpoints([endpoint])

    def initialize_device_job(self, tenant_id, payload: dict) -> dict:
        """Job handler for ``initialize_device``: first poll of a new router"""
        report = self.poll_device(tenant_id, payload["device_id"])
        return report.as_dict()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _collect_endpoints(self, tenant_id, report: PollReport) -> List[DeviceEndpoint]:
        endpoints = []
        for device in self.repos.devices.list_active(tenant_id):
            try:
                endpoints.append(self.repos.devices.endpoint(device))
            except Exception as e:
                # Undecryptable credentials: report without touching the router
                logger.error(f"Cannot build connection for {device.name}: {e}")
                report.errors.append(
                    {"tenant_id": tenant_id, "device_id": device.pk, "name": device.name, "error": str(e)}
                )
        return endpoints

    def _probe(self, endpoint: DeviceEndpoint) -> DeviceStatus:
        try:
            return self.adapter.query_status(endpoint, self.config.device_timeout)
        except Exception as e:
            return DeviceStatus.failed(classify_failure(e), str(e))

    def _poll_endpoints(self, endpoints: List[DeviceEndpoint], report: PollReport = None) -> PollReport:
        report = report or PollReport()
        if not endpoints:
            return report

        executor = ThreadPoolExecutor(
            max_workers=max(1, min(len(endpoints), self.config.poll_workers)),
            thread_name_prefix="device-poll",
        )
        pending = {executor.submit(self._probe, endpoint): endpoint for endpoint in endpoints}
        try:
            for future in as_completed(list(pending), timeout=self.config.poll_cycle_timeout):
                endpoint = pending.pop(future)
                self._record(endpoint, future.result(), report)
        except FuturesTimeout:
            for future, endpoint in pending.items():
                if future.done():
                    self._record(endpoint, future.result(), report)
                elif future.cancel():
                    # Queued behind hung routers; its last known status stands
                    logger.warning(f"⏭️ {endpoint.name} ({endpoint.address}) not polled this cycle, all workers busy")
                    report.skipped.append(
                        {
                            "tenant_id": endpoint.tenant_id,
                            "device_id": endpoint.device_id,
                            "name": endpoint.name,
                            "error": "not polled this cycle",
                        }
                    )
                else:
                    logger.warning(
                        f"⏱️ {endpoint.name} ({endpoint.address}) did not answer within "
                        f"{self.config.poll_cycle_timeout}s"
                    )
                    self._record(
                        endpoint,
                        DeviceStatus.failed(FailureKind.TIMEOUT, "status query timed out"),
                        report,
                    )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            f"📡 Poll cycle over {len(endpoints)} device(s): {report.online} online, "
            f"{report.offline} offline, {report.error} error, {len(report.skipped)} not polled"
        )
        return report

    def _record(self, endpoint: DeviceEndpoint, outcome: DeviceStatus, report: PollReport):
        """Apply one poll outcome. Never raises past the device boundary."""
        try:
            result = self.apply_status(endpoint.tenant_id, endpoint.device_id, outcome)
        except EntityNotFound:
            logger.info(f"Device {endpoint.name} was removed during the poll, skipping")
            return
        except Exception as e:
            logger.error(f"Recording status for {endpoint.name} failed: {e}", exc_info=True)
            report.errors.append(
                {"device_id": endpoint.device_id, "name": endpoint.name, "error": str(e)}
            )
            return
        report.results.append(result)
        if outcome.failure_kind is not None:
            report.errors.append(
                {
                    "device_id": endpoint.device_id,
                    "name": endpoint.name,
                    "failure_kind": outcome.failure_kind.value,
                    "error": outcome.error,
                }
            )

    def apply_status(self, tenant_id, device_id, outcome: DeviceStatus) -> DevicePollResult:
        """Persist a poll outcome and audit any status transition"""
        with transaction.atomic():
            device = self.repos.devices.get(tenant_id, device_id, for_update=True)
            previous = device.status
            if outcome.is_online:
                device.mark_online(outcome.metrics)
            else:
                device.mark_failed(outcome.failure_kind or FailureKind.PROTOCOL_ERROR, outcome.error)

            result = DevicePollResult(
                device_id=device.pk,
                name=device.name,
                status=device.status,
                previous_status=previous,
                failure_kind=device.last_failure_kind or None,
                error=device.last_error,
            )

            if result.changed:
                self.repos.audit.record(
                    tenant_id,
                    "device_status_change",
                    f"{device.name} changed from {previous} to {device.status}",
                    data={
                        "device_id": device.pk,
                        "previous_status": previous,
                        "status": device.status,
                        "failure_kind": result.failure_kind,
                    },
                )
                if device.status in ("offline", "error"):
                    self.repos.audit.record(
                        tenant_id,
                        "device_connection_failure",
                        f"Connection to {device.name} ({device.host}:{device.port}) failed: {device.last_error}",
                        data={
                            "device_id": device.pk,
                            "status": device.status,
                            "failure_kind": result.failure_kind,
                            "error": device.last_error,
                            "consecutive_failures": device.consecutive_failures,
                        },
                        severity="warning",
                    )

        if result.changed:
            logger.info(f"🔄 {device.name}: {previous} -> {device.status}")
            self.publisher.publish(
                DeviceStatusChanged(
                    tenant_id=str(tenant_id),
                    device_id=device.pk,
                    name=device.name,
                    action="updated",
                    status=device.status,
                    previous_status=previous,
                    failure_kind=result.failure_kind,
                )
            )
        return result
