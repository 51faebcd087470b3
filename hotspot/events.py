"""
Domain events and the injected event publisher.

Services call ``publisher.publish(event)`` synchronously; the publisher
hands delivery to a small thread pool so a slow or failing subscriber
never blocks voucher issuance or the device poll loop. Delivery is
best-effort: failures are logged, never raised.
"""

import hashlib
import hmac
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from functools import partial
from typing import Iterable, List, Optional

import requests
from django.db import transaction
from django.utils import timezone

logger = logging.getLogger(__name__)

CHANNEL_SYSTEM = "system-notifications"
CHANNEL_DEVICES = "device-status"


# =============================================================================
# EVENTS
# =============================================================================


@dataclass(frozen=True)
class DomainEvent:
    tenant_id: Optional[str]

    event_type = "event"
    channel = CHANNEL_SYSTEM

    def as_data(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class VoucherGenerated(DomainEvent):
    voucher_id: int
    code: str
    payment_id: int
    transaction_id: str
    profile: str

    event_type = "voucher.generated"


@dataclass(frozen=True)
class VoucherActivated(DomainEvent):
    voucher_id: int
    code: str
    expires_at: str

    event_type = "voucher.activated"


@dataclass(frozen=True)
class VoucherExpired(DomainEvent):
    voucher_id: int
    code: str

    event_type = "voucher.expired"


@dataclass(frozen=True)
class VoucherCleanupPending(DomainEvent):
    voucher_id: int
    code: str
    action: str

    event_type = "voucher.cleanup_pending"


@dataclass(frozen=True)
class DeviceStatusChanged(DomainEvent):
    device_id: int
    name: str
    action: str  # added | updated | deleted
    status: str
    previous_status: Optional[str] = None
    failure_kind: Optional[str] = None

    event_type = "device.status_changed"
    channel = CHANNEL_DEVICES


@dataclass(frozen=True)
class ConfigurationChanged(DomainEvent):
    device_id: int
    change_type: str  # backup | restore | update
    history_id: int
    actor_id: Optional[str] = None

    event_type = "device.configuration_changed"
    channel = CHANNEL_DEVICES


@dataclass(frozen=True)
class SystemAlert(DomainEvent):
    severity: str
    title: str
    detail: str = ""

    event_type = "system.alert"


def build_envelope(event: DomainEvent) -> dict:
    """Wire format shared by every sink"""
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event.event_type,
        "channel": event.channel,
        "timestamp": timezone.now().isoformat(),
        "tenant_id": str(event.tenant_id) if event.tenant_id else None,
        "data": event.as_data(),
    }


# =============================================================================
# SINKS
# =============================================================================


class EventSink(ABC):
    """Delivers one envelope to a subscriber. May raise; the publisher logs."""

    @abstractmethod
    def deliver(self, envelope: dict):
        raise NotImplementedError


class LoggingEventSink(EventSink):
    def __init__(self, logger_name: str = "hotspot.events"):
        self._logger = logging.getLogger(logger_name)

    def deliver(self, envelope: dict):
        self._logger.info(
            f"[{envelope['channel']}] {envelope['event_type']} "
            f"tenant={envelope['tenant_id']} {json.dumps(envelope['data'], default=str)}"
        )


class WebhookEventSink(EventSink):
    """
    POST events to an HTTP endpoint, signed with HMAC-SHA256 so receivers
    can verify the sender.
    """

    USER_AGENT = "NetBill-Events/1.0"

    def __init__(self, url: str, secret: str = "", timeout: int = 10, session=None):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def generate_signature(payload: str, secret: str) -> str:
        """Generate HMAC-SHA256 signature for webhook payload"""
        return hmac.new(
            secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def deliver(self, envelope: dict):
        payload_json = json.dumps(envelope, default=str)
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": envelope["event_type"],
            "X-Webhook-ID": envelope["event_id"],
            "X-Webhook-Timestamp": str(int(time.time())),
            "User-Agent": self.USER_AGENT,
        }
        if self.secret:
            headers["X-Webhook-Signature"] = self.generate_signature(
                payload_json, self.secret
            )

        response = self.session.post(
            self.url, data=payload_json, headers=headers, timeout=self.timeout
        )
        response.raise_for_status()
        logger.debug(f"Event webhook delivered: {envelope['event_type']} -> {self.url}")


# =============================================================================
# PUBLISHERS
# =============================================================================


class EventPublisher(ABC):
    @abstractmethod
    def publish(self, event: DomainEvent):
        raise NotImplementedError

    def publish_on_commit(self, event: DomainEvent):
        """Publish once the surrounding transaction commits (immediately if none)"""
        transaction.on_commit(partial(self.publish, event))

    def close(self):
        pass


class AsyncEventPublisher(EventPublisher):
    """Fan an event out to every sink on a background thread pool"""

    def __init__(self, sinks: Iterable[EventSink], max_workers: int = 2):
        self.sinks: List[EventSink] = list(sinks)
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="event-publisher"
        )

    def publish(self, event: DomainEvent):
        envelope = build_envelope(event)
        for sink in self.sinks:
            try:
                self._executor.submit(self._deliver, sink, envelope)
            except RuntimeError:
                # Executor already shut down (process exiting)
                logger.warning(f"Dropping event {envelope['event_type']}: publisher closed")

    @staticmethod
    def _deliver(sink: EventSink, envelope: dict):
        try:
            sink.deliver(envelope)
        except Exception as e:
            logger.warning(
                f"Event delivery failed via {type(sink).__name__} "
                f"for {envelope['event_type']}: {e}"
            )

    def close(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
