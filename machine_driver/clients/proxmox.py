import logging
import threading
import time
from typing import Any, Callable
from urllib.parse import quote

import httpx

from machine_driver.clients.http import (
    RequestFailure,
    RetryPolicy,
    request_with_retry,
    unwrap_data,
)
from machine_driver.config import DriverSettings
from machine_driver.errors import (
    HypervisorAPIError,
    HypervisorConnectionError,
    ProvisioningTimeoutError,
    RemoteAllocationError,
    RemoteSubmissionError,
)


logger = logging.getLogger(__name__)


def _api_error(
    exc: RequestFailure, operation: str, error_cls: type[HypervisorAPIError]
) -> HypervisorAPIError:
    return error_cls(
        operation=operation, detail=exc.detail, status_code=exc.status_code
    )


class ProxmoxClient:
    """Synchronous client for the subset of the Proxmox VE API the driver uses.

    Every call returns the unwrapped ``data`` member of the response. Calls
    that start a Proxmox task (VM create/start/stop/delete) return a UPID and,
    when ``wait_for_tasks`` is set, block until the task has stopped.
    """

    def __init__(
        self,
        settings: DriverSettings,
        retry: RetryPolicy | None = None,
        http_client: httpx.Client | None = None,
    ):
        self.settings = settings
        self.retry = retry or RetryPolicy(
            settings.retry_attempts, settings.retry_sleep_sec
        )
        self.client = http_client or httpx.Client(
            base_url=settings.api_url,
            timeout=settings.request_timeout_sec,
            verify=settings.verify_tls,
        )
        self.version: str | None = None

    @property
    def userid(self) -> str:
        return f"{self.settings.user}@{self.settings.realm}"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = request_with_retry(self.client, method, path, self.retry, **kwargs)
        return unwrap_data(response)

    # authentication

    def login(self) -> str:
        settings = self.settings
        try:
            if settings.token_name and settings.token_value:
                self.client.headers["Authorization"] = (
                    f"PVEAPIToken={self.userid}!{settings.token_name}={settings.token_value}"
                )
            else:
                ticket = self._request(
                    "POST",
                    "/access/ticket",
                    data={"username": self.userid, "password": settings.password},
                )
                if not isinstance(ticket, dict) or not ticket.get("ticket"):
                    raise HypervisorConnectionError(
                        host=settings.host,
                        user=settings.user,
                        realm=settings.realm,
                        detail="authentication response carried no ticket",
                    )
                self.client.headers["Cookie"] = f"PVEAuthCookie={ticket['ticket']}"
                self.client.headers["CSRFPreventionToken"] = ticket.get(
                    "CSRFPreventionToken", ""
                )
            version = self._request("GET", "/version")
        except RequestFailure as exc:
            raise HypervisorConnectionError(
                host=settings.host,
                user=settings.user,
                realm=settings.realm,
                detail=exc.detail,
            ) from exc
        self.version = (version or {}).get("version", "unknown")
        logger.info(
            "connected to proxmox host=%s user=%s version=%s",
            settings.host,
            self.userid,
            self.version,
        )
        return self.version

    # allocation and storage

    def next_id(self, hint: int | None = None) -> str:
        params = {"vmid": hint} if hint else None
        try:
            vmid = self._request("GET", "/cluster/nextid", params=params)
        except RequestFailure as exc:
            raise _api_error(exc, "cluster/nextid", RemoteAllocationError) from exc
        return str(vmid)

    def storage_type(self, node: str, storage: str) -> str:
        try:
            status = self._request("GET", f"/nodes/{node}/storage/{storage}/status")
        except RequestFailure as exc:
            raise _api_error(exc, f"storage {storage} status", HypervisorAPIError) from exc
        return str((status or {}).get("type", ""))

    def create_volume(
        self, node: str, storage: str, *, filename: str, size: str, vmid: str
    ) -> str:
        try:
            volid = self._request(
                "POST",
                f"/nodes/{node}/storage/{storage}/content",
                data={"filename": filename, "size": size, "vmid": vmid},
            )
        except RequestFailure as exc:
            raise _api_error(exc, f"create volume {filename}", RemoteSubmissionError) from exc
        return str(volid or f"{storage}:{filename}")

    def delete_volume(self, node: str, storage: str, volume: str) -> None:
        try:
            upid = self._request(
                "DELETE",
                f"/nodes/{node}/storage/{storage}/content/{quote(volume, safe='')}",
            )
        except RequestFailure as exc:
            raise _api_error(exc, f"delete volume {volume}", RemoteSubmissionError) from exc
        self._maybe_wait(node, upid, f"delete volume {volume}", RemoteSubmissionError)

    # vm lifecycle

    def create_vm(self, node: str, definition: dict[str, str]) -> None:
        operation = f"create vm {definition.get('vmid')}"
        try:
            upid = self._request("POST", f"/nodes/{node}/qemu", data=definition)
        except RequestFailure as exc:
            raise _api_error(exc, operation, RemoteSubmissionError) from exc
        self._maybe_wait(node, upid, operation, RemoteSubmissionError)

    def _vm_status(self, node: str, vmid: str, action: str) -> None:
        operation = f"{action} vm {vmid}"
        try:
            upid = self._request("POST", f"/nodes/{node}/qemu/{vmid}/status/{action}")
        except RequestFailure as exc:
            raise _api_error(exc, operation, RemoteSubmissionError) from exc
        self._maybe_wait(node, upid, operation, RemoteSubmissionError)

    def start_vm(self, node: str, vmid: str) -> None:
        self._vm_status(node, vmid, "start")

    def stop_vm(self, node: str, vmid: str) -> None:
        self._vm_status(node, vmid, "stop")

    def shutdown_vm(self, node: str, vmid: str) -> None:
        self._vm_status(node, vmid, "shutdown")

    def delete_vm(self, node: str, vmid: str) -> None:
        operation = f"delete vm {vmid}"
        try:
            upid = self._request("DELETE", f"/nodes/{node}/qemu/{vmid}")
        except RequestFailure as exc:
            raise _api_error(exc, operation, RemoteSubmissionError) from exc
        self._maybe_wait(node, upid, operation, RemoteSubmissionError)

    # guest agent

    def agent_command(self, node: str, vmid: str, command: str) -> Any:
        try:
            return self._request("POST", f"/nodes/{node}/qemu/{vmid}/agent/{command}")
        except RequestFailure as exc:
            raise _api_error(exc, f"agent {command} vm {vmid}", HypervisorAPIError) from exc

    def guest_ipv4(self, node: str, vmid: str, interface: str = "eth0") -> str | None:
        try:
            data = self._request(
                "GET", f"/nodes/{node}/qemu/{vmid}/agent/network-get-interfaces"
            )
        except RequestFailure as exc:
            raise _api_error(exc, f"agent network vm {vmid}", HypervisorAPIError) from exc
        return pick_ipv4((data or {}).get("result") or [], interface)

    # tasks

    def task_status(self, node: str, upid: str) -> dict:
        try:
            return self._request("GET", f"/nodes/{node}/tasks/{upid}/status") or {}
        except RequestFailure as exc:
            raise _api_error(exc, f"task {upid}", HypervisorAPIError) from exc

    def _maybe_wait(
        self,
        node: str,
        upid: Any,
        operation: str,
        error_cls: type[HypervisorAPIError],
    ) -> None:
        if not self.settings.wait_for_tasks:
            return
        if not isinstance(upid, str) or not upid.startswith("UPID:"):
            return
        self.wait_for_task(node, upid, operation, error_cls)

    def wait_for_task(
        self,
        node: str,
        upid: str,
        operation: str,
        error_cls: type[HypervisorAPIError] = HypervisorAPIError,
    ) -> None:
        deadline = time.monotonic() + self.settings.task_timeout_sec
        while True:
            status = self.task_status(node, upid)
            if status.get("status") == "stopped":
                exitstatus = status.get("exitstatus", "")
                if exitstatus != "OK":
                    raise error_cls(
                        operation=operation, detail=f"task {upid} ended with {exitstatus}"
                    )
                return
            if time.monotonic() >= deadline:
                raise ProvisioningTimeoutError(
                    f"{operation}: task {upid} still running after "
                    f"{self.settings.task_timeout_sec}s"
                )
            time.sleep(self.settings.task_poll_interval_sec)

    def close(self) -> None:
        self.client.close()


def pick_ipv4(interfaces: list[dict], preferred: str = "eth0") -> str | None:
    def _ipv4(iface: dict) -> str | None:
        for addr in iface.get("ip-addresses") or []:
            if addr.get("ip-address-type") != "ipv4":
                continue
            ip = addr.get("ip-address")
            if ip and not ip.startswith("127."):
                return ip
        return None

    for iface in interfaces:
        if iface.get("name") == preferred:
            found = _ipv4(iface)
            if found:
                return found
    for iface in interfaces:
        if iface.get("name") == "lo":
            continue
        found = _ipv4(iface)
        if found:
            return found
    return None


class HypervisorConnector:
    """Connect-once wrapper: owns the authenticated client for one driver."""

    def __init__(self, factory: Callable[[], ProxmoxClient]):
        self._factory = factory
        self._client: ProxmoxClient | None = None
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def get(self) -> ProxmoxClient:
        with self._lock:
            if self._client is None:
                client = self._factory()
                client.login()
                self._client = client
            return self._client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None


def connector_for(settings: DriverSettings) -> HypervisorConnector:
    return HypervisorConnector(lambda: ProxmoxClient(settings))
