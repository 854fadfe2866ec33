from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from machine_driver.db import Base


class ProvisioningState(str, Enum):
    UNCONFIGURED = "UNCONFIGURED"
    CONNECTED = "CONNECTED"
    PRECHECKED = "PRECHECKED"
    VOLUME_CREATED = "VOLUME_CREATED"
    CREATED = "CREATED"
    STARTED = "STARTED"
    GUEST_REACHABLE = "GUEST_REACHABLE"
    TRUST_INJECTED = "TRUST_INJECTED"
    REMOVED = "REMOVED"


class MachineStatus(str, Enum):
    RUNNING = "Running"
    PAUSED = "Paused"
    UNKNOWN = "Unknown"


class Machine(Base):
    __tablename__ = "machines"

    machine_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    node: Mapped[str] = mapped_column(String(128), nullable=False)
    state: Mapped[str] = mapped_column(
        String(32), default=ProvisioningState.UNCONFIGURED.value, nullable=False
    )
    vmid: Mapped[str | None] = mapped_column(String(32))
    storage: Mapped[str | None] = mapped_column(String(128))
    storage_format: Mapped[str | None] = mapped_column(String(16))
    storage_backend: Mapped[str | None] = mapped_column(String(32))
    storage_filename: Mapped[str | None] = mapped_column(String(256))
    disk_ref: Mapped[str | None] = mapped_column(String(512))
    ssh_key_path: Mapped[str | None] = mapped_column(Text)
    guest_ip: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text)


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    machine_name: Mapped[str | None] = mapped_column(
        String(128), ForeignKey("machines.machine_name")
    )
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
