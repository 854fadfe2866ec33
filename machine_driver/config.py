from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SUPPORTED_STORAGE_FORMATS = {"raw", "qcow2"}
NO_VLAN = "No VLAN"


class DriverSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PROXMOXVE_", env_file=".env", extra="ignore"
    )

    host: str = Field(default="192.168.1.253")
    port: int = Field(default=8006, ge=1, le=65535)
    node: str = Field(default="pve")
    user: str = Field(default="root")
    realm: str = Field(default="pam")
    password: str = Field(default="")
    token_name: str | None = Field(default=None)
    token_value: str | None = Field(default=None)
    verify_tls: bool = Field(default=False)

    storage: str = Field(default="local-lvm")
    storage_type: str = Field(default="raw")
    image_file: str = Field(default="local:iso/xxxx.iso")
    pool: str = Field(default="")
    disksize_gb: int = Field(default=16, ge=1)
    memory_gb: int = Field(default=8, ge=1)

    guest_username: str = Field(default="docker")
    guest_password: str = Field(default="tcuser")
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_connect_timeout_sec: int = Field(default=30, ge=1)

    net_bridge: str = Field(default="vmbr0")
    net_model: str = Field(default="virtio")
    net_vlantag: str = Field(default=NO_VLAN)
    cpu_sockets: int = Field(default=1, ge=1, le=4)
    cpu_cores: int = Field(default=4, ge=1, le=128)

    guest_ssh_private_key: str = Field(default="")
    guest_ssh_public_key: str = Field(default="")
    guest_ssh_authorized_keys: str = Field(default="")

    store_path: str = Field(default="./.machine-driver")
    database_url: str = Field(default="sqlite:///./machine_driver.db")

    request_timeout_sec: float = Field(default=30.0, gt=0)
    retry_attempts: int = Field(default=1, ge=1)
    retry_sleep_sec: int = Field(default=2, ge=0)
    wait_for_tasks: bool = Field(default=True)
    task_timeout_sec: int = Field(default=300, ge=1)
    task_poll_interval_sec: float = Field(default=1.0, ge=0)

    guest_boot_grace_sec: float = Field(default=10.0, ge=0)
    guest_poll_interval_sec: float = Field(default=2.0, ge=0)
    guest_settle_sec: float = Field(default=2.0, ge=0)
    guest_ready_deadline_sec: float = Field(default=600.0, gt=0)
    guest_max_probes: int | None = Field(default=None, ge=1)

    driver_debug: bool = Field(default=False)
    http_debug: bool = Field(default=False)

    @field_validator("storage_type")
    @classmethod
    def _lower_storage_type(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def api_url(self) -> str:
        return f"https://{self.host}:{self.port}/api2/json"

    @property
    def memory_mb(self) -> int:
        return self.memory_gb * 1024

    def machine_dir(self, machine_name: str) -> Path:
        return Path(self.store_path) / "machines" / machine_name

    def ssh_key_path(self, machine_name: str) -> Path:
        return self.machine_dir(machine_name) / "id_rsa"


@lru_cache(maxsize=1)
def get_settings() -> DriverSettings:
    return DriverSettings()
