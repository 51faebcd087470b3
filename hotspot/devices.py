"""
Device connectivity capability and its MikroTik RouterOS implementation.

The core talks to routers only through ``DeviceAdapter``. Every call is
bounded by a socket timeout and failures are classified into the closed
``FailureKind`` taxonomy.
"""

import logging
import re
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

import routeros_api
from routeros_api import exceptions as routeros_exceptions

from .exceptions import ConnectivityError, FailureKind

logger = logging.getLogger(__name__)

UPTIME_UNITS = {"w": 604800, "d": 86400, "h": 3600, "m": 60, "s": 1}


@dataclass(frozen=True)
class DeviceEndpoint:
    """Decrypted connection details for one router"""

    device_id: int
    tenant_id: str
    name: str
    host: str
    port: int = 8728
    username: str = "admin"
    password: str = field(default="", repr=False)
    use_ssl: bool = False

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class UserCredentials:
    username: str
    password: str = field(repr=False)


@dataclass
class DeviceStatus:
    """Outcome of a status query"""

    state: str  # online | offline | error
    metrics: dict = field(default_factory=dict)
    failure_kind: Optional[FailureKind] = None
    error: str = ""

    @classmethod
    def online(cls, metrics: dict = None) -> "DeviceStatus":
        return cls(state="online", metrics=metrics or {})

    @classmethod
    def failed(cls, kind: FailureKind, error: str = "") -> "DeviceStatus":
        kind = FailureKind(kind)
        return cls(state=kind.device_status, failure_kind=kind, error=error)

    @property
    def is_online(self) -> bool:
        return self.state == "online"


@dataclass
class ActiveSession:
    username: str
    mac_address: str = ""
    address: str = ""
    uptime_seconds: int = 0
    bytes_in: int = 0
    bytes_out: int = 0


@dataclass
class DeviceAccount:
    """A hotspot user as listed on the router"""

    username: str
    profile: str = ""
    disabled: bool = False
    password: str = field(default="", repr=False)


def parse_uptime(uptime_str: str) -> int:
    """Parse MikroTik uptime format (1w2d3h4m5s) to seconds"""
    if not uptime_str:
        return 0
    return sum(
        int(amount) * UPTIME_UNITS[unit]
        for amount, unit in re.findall(r"(\d+)([wdhms])", uptime_str)
    )


class DeviceAdapter(ABC):
    """Capability the core needs from a network device"""

    @abstractmethod
    def provision_user(
        self, endpoint: DeviceEndpoint, credentials: UserCredentials, profile: str
    ) -> bool:
        """Create or re-enable a hotspot login. Raises ConnectivityError."""

    @abstractmethod
    def revoke_user(self, endpoint: DeviceEndpoint, username: str) -> bool:
        """Disable a hotspot login and kick its session. Raises ConnectivityError."""

    @abstractmethod
    def query_status(self, endpoint: DeviceEndpoint, timeout: float) -> DeviceStatus:
        """Probe the device; connectivity failures come back as a failed status."""

    @abstractmethod
    def list_active_sessions(self, endpoint: DeviceEndpoint) -> List[ActiveSession]:
        """Currently connected hotspot sessions. Raises ConnectivityError."""

    @abstractmethod
    def list_users(self, endpoint: DeviceEndpoint) -> List[DeviceAccount]:
        """Configured hotspot logins. Raises ConnectivityError."""


def classify_failure(error: Exception) -> FailureKind:
    """Map a connection/API exception onto the failure taxonomy"""
    if isinstance(error, ConnectivityError):
        return error.kind
    if isinstance(error, (socket.timeout, TimeoutError)):
        return FailureKind.TIMEOUT

    message = str(error).lower()
    if "timed out" in message or "timeout" in message:
        return FailureKind.TIMEOUT
    if (
        "invalid user name or password" in message
        or "cannot log in" in message
        or "not logged in" in message
        or "login failure" in message
    ):
        return FailureKind.AUTH_FAILURE
    if isinstance(error, routeros_exceptions.RouterOsApiConnectionError):
        return FailureKind.UNREACHABLE
    if isinstance(error, (ConnectionError, OSError)):
        return FailureKind.UNREACHABLE
    return FailureKind.PROTOCOL_ERROR


class RouterOSAdapter(DeviceAdapter):
    """MikroTik RouterOS API adapter (routeros-api)"""

    def __init__(self, default_profile: str = "default", ssl_verify: bool = False, timeout: float = 10):
        self.default_profile = default_profile
        self.ssl_verify = ssl_verify
        self.timeout = timeout

    def _connect(self, endpoint: DeviceEndpoint, timeout: Optional[float] = None):
        """
        Return (pool, api) for the endpoint or raise ConnectivityError.
        routeros-api creates its socket without a timeout argument, so the
        process default applies; every call uses the configured value.
        """
        socket.setdefaulttimeout(timeout or self.timeout)
        pool = routeros_api.RouterOsApiPool(
            endpoint.host,
            username=endpoint.username,
            password=endpoint.password,
            port=int(endpoint.port or 8728),
            use_ssl=endpoint.use_ssl,
            ssl_verify=self.ssl_verify,
            plaintext_login=True,
        )
        try:
            api = pool.get_api()
        except Exception as e:
            kind = classify_failure(e)
            logger.warning(
                f"RouterOS connection to {endpoint.name} ({endpoint.address}) failed [{kind.value}]: {e}"
            )
            raise ConnectivityError(
                f"Cannot connect to {endpoint.name} ({endpoint.address}): {e}", kind
            ) from e
        return pool, api

    @staticmethod
    def _disconnect(pool):
        """Safely close the pool's connection if present."""
        try:
            if pool:
                pool.disconnect()
        except Exception as e:
            logger.debug(f"Ignoring error while closing RouterOS connection: {e}")

    def _call(self, endpoint: DeviceEndpoint, operation, timeout: Optional[float] = None):
        pool, api = self._connect(endpoint, timeout)
        try:
            return operation(api)
        except ConnectivityError:
            raise
        except Exception as e:
            kind = classify_failure(e)
            raise ConnectivityError(
                f"RouterOS call on {endpoint.name} failed: {e}", kind
            ) from e
        finally:
            self._disconnect(pool)

    # ------------------------------------------------------------------
    # DeviceAdapter
    # ------------------------------------------------------------------

    def provision_user(self, endpoint, credentials, profile=None):
        profile = profile or self.default_profile

        def operation(api):
            users = api.get_resource("/ip/hotspot/user")
            existing = users.get(name=credentials.username)
            if existing:
                for item in existing:
                    user_id = item.get(".id") or item.get("id")
                    if user_id:
                        users.set(
                            id=user_id,
                            password=credentials.password,
                            profile=profile,
                            disabled="no",
                        )
                logger.info(
                    f"Updated and re-enabled hotspot user {credentials.username} on {endpoint.name}"
                )
                return True

            users.add(
                name=credentials.username,
                password=credentials.password,
                profile=profile,
                disabled="no",
            )
            logger.info(f"Created hotspot user {credentials.username} on {endpoint.name}")
            return True

        return self._call(endpoint, operation)

    def revoke_user(self, endpoint, username):
        def operation(api):
            revoked = False
            users = api.get_resource("/ip/hotspot/user")
            for item in users.get(name=username):
                user_id = item.get(".id") or item.get("id")
                if user_id:
                    users.set(id=user_id, disabled="yes")
                    revoked = True
                    logger.info(f"Disabled hotspot user {username} on {endpoint.name}")

            active = api.get_resource("/ip/hotspot/active")
            for session in active.get(user=username):
                session_id = session.get(".id") or session.get("id")
                if session_id:
                    active.remove(id=session_id)
                    revoked = True
                    logger.info(f"Kicked active session for {username} on {endpoint.name}")
            return revoked

        return self._call(endpoint, operation)

    def query_status(self, endpoint, timeout):
        def operation(api):
            resources = api.get_resource("/system/resource").get()
            if not resources:
                raise ConnectivityError(
                    "Empty /system/resource response", FailureKind.PROTOCOL_ERROR
                )
            res = resources[0]
            identity = api.get_resource("/system/identity").get()
            active = api.get_resource("/ip/hotspot/active").get()
            return {
                "uptime_seconds": parse_uptime(res.get("uptime", "0s")),
                "cpu_load": int(res.get("cpu-load", 0) or 0),
                "free_memory": int(res.get("free-memory", 0) or 0),
                "total_memory": int(res.get("total-memory", 0) or 0),
                "version": res.get("version", ""),
                "board_name": res.get("board-name", ""),
                "identity": identity[0].get("name", "") if identity else "",
                "active_sessions": len(active or []),
            }

        try:
            return DeviceStatus.online(self._call(endpoint, operation, timeout))
        except ConnectivityError as e:
            return DeviceStatus.failed(e.kind, str(e))

    def list_active_sessions(self, endpoint):
        def operation(api):
            return [
                ActiveSession(
                    username=session.get("user", ""),
                    mac_address=session.get("mac-address", ""),
                    address=session.get("address", ""),
                    uptime_seconds=parse_uptime(session.get("uptime", "")),
                    bytes_in=int(session.get("bytes-in", 0) or 0),
                    bytes_out=int(session.get("bytes-out", 0) or 0),
                )
                for session in api.get_resource("/ip/hotspot/active").get()
            ]

        return self._call(endpoint, operation)

    def list_users(self, endpoint):
        def operation(api):
            return [
                DeviceAccount(
                    username=item.get("name", ""),
                    profile=item.get("profile", ""),
                    disabled=item.get("disabled", "false") in ("true", "yes"),
                    password=item.get("password", ""),
                )
                for item in api.get_resource("/ip/hotspot/user").get()
                if item.get("name")
            ]

        return self._call(endpoint, operation)
