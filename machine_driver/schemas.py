from datetime import datetime

from pydantic import BaseModel, Field


class MachineCreateRequest(BaseModel):
    storage: str | None = None
    storage_type: str | None = None
    image_file: str | None = None
    pool: str | None = None
    disksize_gb: int | None = Field(default=None, ge=1)
    memory_gb: int | None = Field(default=None, ge=1)
    cpu_sockets: int | None = Field(default=None, ge=1, le=4)
    cpu_cores: int | None = Field(default=None, ge=1, le=128)
    net_bridge: str | None = None
    net_model: str | None = None
    net_vlantag: str | None = None
    guest_ssh_authorized_keys: str | None = None

    def overrides(self) -> dict:
        return self.model_dump(exclude_none=True)


class MachineRead(BaseModel):
    machine_name: str
    node: str
    state: str
    vmid: str | None
    storage: str | None
    storage_filename: str | None
    disk_ref: str | None
    guest_ip: str | None
    last_error: str | None
    updated_at: datetime


class MachineStatusRead(BaseModel):
    machine_name: str
    vmid: str | None
    status: str
    url: str | None = None


class EventRead(BaseModel):
    timestamp: datetime
    event_type: str
    payload: dict


class ActionResponse(BaseModel):
    machine_name: str
    action: str
    state: str
