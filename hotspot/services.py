"""
Composition root.

``build_core`` wires config, repositories, adapter, gateways, publisher and
services together once. Cron tasks and management commands call
``get_core()``; tests call ``build_core`` directly with fakes.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict

from .cache import DjangoRepositoryCache
from .cleanup import VoucherCleanup
from .conf import CoreConfig
from .crypto import CredentialCipher
from .devices import DeviceAdapter, RouterOSAdapter
from .events import AsyncEventPublisher, EventPublisher, LoggingEventSink, WebhookEventSink
from .fleet import DeviceManager
from .gateways import GatewayRegistry
from .jobs import JobHandler, JobQueue
from .monitoring import DeviceMonitor
from .payments import PaymentService
from .reconciliation import ReconciliationCoordinator
from .repositories import Repositories
from .vouchers import VoucherService

logger = logging.getLogger(__name__)


@dataclass
class Core:
    config: CoreConfig
    repositories: Repositories
    publisher: EventPublisher
    adapter: DeviceAdapter
    gateways: GatewayRegistry
    jobs: JobQueue
    vouchers: VoucherService
    coordinator: ReconciliationCoordinator
    payments: PaymentService
    monitor: DeviceMonitor
    fleet: DeviceManager
    cleanup: VoucherCleanup

    @property
    def handlers(self) -> Dict[str, JobHandler]:
        """Background job kind -> handler"""
        return {
            "process_payment": self.coordinator.process_payment_job,
            "provision_voucher": lambda tenant_id, payload: self.vouchers.provision(
                tenant_id, payload["voucher_id"]
            ),
            "revoke_voucher": lambda tenant_id, payload: self.vouchers.revoke(
                tenant_id, payload["voucher_id"]
            ),
            "initialize_device": self.monitor.initialize_device_job,
        }


def build_publisher(config: CoreConfig) -> EventPublisher:
    sinks = [LoggingEventSink()]
    if config.event_webhook_url:
        sinks.append(
            WebhookEventSink(
                config.event_webhook_url,
                secret=config.event_webhook_secret,
                timeout=config.event_webhook_timeout,
            )
        )
    return AsyncEventPublisher(sinks, max_workers=config.event_workers)


def build_core(
    config: CoreConfig = None,
    adapter: DeviceAdapter = None,
    publisher: EventPublisher = None,
    gateways: GatewayRegistry = None,
    cache=None,
) -> Core:
    config = config or CoreConfig.from_settings()
    cache = cache or DjangoRepositoryCache(config.cache_alias, config.cache_ttl)
    repositories = Repositories.build(CredentialCipher(config.credentials_key), cache, config.cache_ttl)
    publisher = publisher or build_publisher(config)
    adapter = adapter or RouterOSAdapter(
        default_profile=config.default_profile,
        ssl_verify=config.ssl_verify,
        timeout=config.device_timeout,
    )
    # Unknown or incomplete gateway config fails here, at startup
    gateways = gateways or GatewayRegistry.from_config(config.gateways)

    jobs = JobQueue(config, repositories.audit, publisher)
    vouchers = VoucherService(repositories, publisher, adapter, jobs, config)
    coordinator = ReconciliationCoordinator(repositories, vouchers, jobs)

    core = Core(
        config=config,
        repositories=repositories,
        publisher=publisher,
        adapter=adapter,
        gateways=gateways,
        jobs=jobs,
        vouchers=vouchers,
        coordinator=coordinator,
        payments=PaymentService(repositories, gateways, coordinator, vouchers),
        monitor=DeviceMonitor(repositories, adapter, publisher, config),
        fleet=DeviceManager(repositories, adapter, publisher, jobs),
        cleanup=VoucherCleanup(repositories, vouchers, publisher, config),
    )
    logger.debug(f"Hotspot core ready (gateways: {[p.value for p in gateways.providers]})")
    return core


@lru_cache(maxsize=None)
def get_core() -> Core:
    """Process-wide core for cron tasks and management commands"""
    return build_core()
