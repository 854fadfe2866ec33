import json
import logging
import threading
from datetime import UTC, datetime
from typing import Callable

from fastapi import APIRouter, HTTPException

from machine_driver.config import DriverSettings, get_settings
from machine_driver.db import session_scope
from machine_driver.errors import (
    DriverError,
    HypervisorAPIError,
    HypervisorConnectionError,
    InvalidTransitionError,
    KeyIOError,
    ProvisioningCancelled,
    ProvisioningTimeoutError,
    TrustInjectionError,
    UnsupportedStorageFormatError,
)
from machine_driver.metrics import metrics
from machine_driver.models import Machine, MachineStatus
from machine_driver.repositories import get_machine, list_events, orphaned_volumes
from machine_driver.schemas import (
    ActionResponse,
    EventRead,
    MachineCreateRequest,
    MachineRead,
    MachineStatusRead,
)
from machine_driver.services.provisioning import MachineDriver


router = APIRouter()
logger = logging.getLogger(__name__)

_lock = threading.Lock()
_drivers: dict[str, MachineDriver] = {}


def build_driver(machine_name: str, settings: DriverSettings) -> MachineDriver:
    return MachineDriver(machine_name, settings)


def get_driver(
    machine_name: str,
    overrides: dict | None = None,
    factory: Callable[[str, DriverSettings], MachineDriver] | None = None,
) -> MachineDriver:
    """One driver per machine name, created on first use.

    Overrides only apply when the driver is created; an in-flight driver keeps
    the configuration it was provisioned with.
    """
    factory = factory or build_driver
    with _lock:
        driver = _drivers.get(machine_name)
        if driver is None:
            settings = get_settings()
            if overrides:
                settings = DriverSettings.model_validate(
                    {**settings.model_dump(), **overrides}
                )
            driver = factory(machine_name, settings)
            _drivers[machine_name] = driver
        return driver


def forget_drivers() -> None:
    with _lock:
        _drivers.clear()


def _status_for(exc: DriverError) -> int:
    if isinstance(exc, UnsupportedStorageFormatError):
        return 400
    if isinstance(exc, InvalidTransitionError):
        return 409
    if isinstance(exc, (ProvisioningTimeoutError, ProvisioningCancelled)):
        return 504
    if isinstance(exc, (HypervisorConnectionError, HypervisorAPIError, TrustInjectionError)):
        return 502
    if isinstance(exc, KeyIOError):
        return 500
    return 409


def _raise_driver_error(machine_name: str, action: str, exc: DriverError) -> None:
    metrics.inc(f"api_errors_total.{action}")
    logger.error(
        "%s failed machine=%s error=%s reason=%s",
        action,
        machine_name,
        exc.__class__.__name__,
        exc,
    )
    raise HTTPException(
        status_code=_status_for(exc),
        detail={
            "machine": machine_name,
            "action": action,
            "error": exc.__class__.__name__,
            "reason": str(exc),
        },
    ) from exc


def _machine_read(machine: Machine) -> MachineRead:
    return MachineRead(
        machine_name=machine.machine_name,
        node=machine.node,
        state=machine.state,
        vmid=machine.vmid,
        storage=machine.storage,
        storage_filename=machine.storage_filename,
        disk_ref=machine.disk_ref,
        guest_ip=machine.guest_ip,
        last_error=machine.last_error,
        updated_at=machine.updated_at,
    )


def _require_machine(machine_name: str) -> Machine:
    with session_scope() as session:
        machine = get_machine(session, machine_name)
    if machine is None:
        raise HTTPException(status_code=404, detail=f"unknown machine {machine_name}")
    return machine


@router.get("/healthz")
def healthz() -> dict:
    settings = get_settings()
    return {
        "status": "ok",
        "proxmox_host": settings.host,
        "node": settings.node,
        "generated_at": datetime.now(UTC).isoformat(),
    }


@router.get("/metrics")
def get_metrics() -> dict[str, int | float]:
    return metrics.snapshot()


@router.put("/v1/machines/{machine_name}", response_model=MachineRead)
def provision_machine(
    machine_name: str, req: MachineCreateRequest | None = None
) -> MachineRead:
    driver = get_driver(machine_name, req.overrides() if req else None)
    metrics.inc("provision_requests_total")
    try:
        machine = driver.provision()
    except DriverError as exc:
        _raise_driver_error(machine_name, "provision", exc)
    return _machine_read(machine)


@router.get("/v1/machines/{machine_name}", response_model=MachineRead)
def read_machine(machine_name: str) -> MachineRead:
    return _machine_read(_require_machine(machine_name))


@router.get("/v1/machines/{machine_name}/status", response_model=MachineStatusRead)
def machine_status(machine_name: str) -> MachineStatusRead:
    _require_machine(machine_name)
    driver = get_driver(machine_name)
    try:
        status = driver.get_state()
        url = driver.get_url() if status == MachineStatus.RUNNING else None
    except DriverError as exc:
        _raise_driver_error(machine_name, "status", exc)
    return MachineStatusRead(
        machine_name=machine_name, vmid=driver.vmid, status=status.value, url=url
    )


@router.get("/v1/machines/{machine_name}/events", response_model=list[EventRead])
def machine_events(machine_name: str) -> list[EventRead]:
    _require_machine(machine_name)
    with session_scope() as session:
        events = list_events(session, machine_name)
        return [
            EventRead(
                timestamp=event.timestamp,
                event_type=event.event_type,
                payload=json.loads(event.payload_json),
            )
            for event in events
        ]


@router.post("/v1/machines/{machine_name}/{action}", response_model=ActionResponse)
def machine_action(machine_name: str, action: str) -> ActionResponse:
    _require_machine(machine_name)
    driver = get_driver(machine_name)
    handlers = {
        "start": driver.start,
        "stop": driver.stop,
        "restart": driver.restart,
        "kill": driver.kill,
    }
    handler = handlers.get(action)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"unknown action {action}")
    try:
        handler()
    except DriverError as exc:
        _raise_driver_error(machine_name, action, exc)
    return ActionResponse(machine_name=machine_name, action=action, state=driver.state)


@router.delete("/v1/machines/{machine_name}", response_model=ActionResponse)
def remove_machine(machine_name: str) -> ActionResponse:
    _require_machine(machine_name)
    driver = get_driver(machine_name)
    try:
        driver.remove()
    except DriverError as exc:
        _raise_driver_error(machine_name, "remove", exc)
    with _lock:
        _drivers.pop(machine_name, None)
    return ActionResponse(machine_name=machine_name, action="remove", state=driver.state)


@router.delete(
    "/v1/machines/{machine_name}/orphaned-volume", response_model=MachineRead
)
def discard_orphaned_volume(machine_name: str) -> MachineRead:
    _require_machine(machine_name)
    driver = get_driver(machine_name)
    try:
        machine = driver.discard_orphaned_volume()
    except DriverError as exc:
        _raise_driver_error(machine_name, "discard_volume", exc)
    return _machine_read(machine)


@router.get("/v1/orphaned-volumes", response_model=list[MachineRead])
def list_orphaned_volumes() -> list[MachineRead]:
    with session_scope() as session:
        return [_machine_read(m) for m in orphaned_volumes(session)]
