import json
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from machine_driver.models import Event, Machine, ProvisioningState
from machine_driver.state_machine import can_transition


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session, event_type: str, payload: dict, machine_name: str | None = None
) -> None:
    session.add(
        Event(
            machine_name=machine_name,
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True),
        )
    )


def get_machine(session: Session, machine_name: str) -> Machine | None:
    return session.get(Machine, machine_name)


def list_machines(session: Session, state: str | None = None) -> list[Machine]:
    query = select(Machine)
    if state:
        query = query.where(Machine.state == state)
    return list(session.scalars(query.order_by(Machine.created_at.desc())))


def list_events(session: Session, machine_name: str) -> list[Event]:
    query = (
        select(Event)
        .where(Event.machine_name == machine_name)
        .order_by(Event.id.asc())
    )
    return list(session.scalars(query))


def get_or_create_machine(session: Session, machine_name: str, node: str) -> Machine:
    machine = get_machine(session, machine_name)
    if machine is None:
        now = now_utc()
        machine = Machine(
            machine_name=machine_name,
            node=node,
            state=ProvisioningState.UNCONFIGURED.value,
            created_at=now,
            updated_at=now,
        )
        session.add(machine)
        session.flush()
    return machine


def cas_machine_state(
    session: Session,
    machine: Machine,
    expected: str,
    target: str,
    last_error: str | None = None,
) -> bool:
    if machine.state != expected:
        return False
    if not can_transition(expected, target):
        return False
    machine.state = target
    machine.updated_at = now_utc()
    machine.last_error = last_error
    return True


def orphaned_volumes(session: Session) -> list[Machine]:
    """Machines whose volume exists but whose VM definition was never accepted."""
    return list_machines(session, state=ProvisioningState.VOLUME_CREATED.value)


def reset_machine(session: Session, machine: Machine) -> None:
    """Clear a REMOVED record so the machine name can be provisioned again."""
    if not cas_machine_state(
        session,
        machine,
        ProvisioningState.REMOVED.value,
        ProvisioningState.UNCONFIGURED.value,
    ):
        return
    for field in (
        "vmid",
        "storage",
        "storage_format",
        "storage_backend",
        "storage_filename",
        "disk_ref",
        "guest_ip",
    ):
        setattr(machine, field, None)
    write_event(session, "machine.reset", {}, machine.machine_name)
