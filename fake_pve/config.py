from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakePVESettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_PVE_", extra="ignore")

    node: str = Field(default="pve")
    userid: str = Field(default="root@pam")
    password: str = Field(default="secret")
    version: str = Field(default="8.2.4")
    first_vmid: int = Field(default=100, ge=100)

    # name=backend pairs, e.g. "local-lvm=lvmthin,local=dir"
    storages_csv: str = Field(default="local-lvm=lvmthin,local=dir")

    # the guest agent fails this many pings before answering
    agent_ready_after_pings: int = Field(default=0, ge=0)
    guest_ip: str = Field(default="10.0.0.50")

    @property
    def storages(self) -> dict[str, str]:
        result = {}
        for item in self.storages_csv.split(","):
            name, _, backend = item.partition("=")
            if name.strip():
                result[name.strip()] = backend.strip() or "dir"
        return result


@lru_cache(maxsize=1)
def get_settings() -> FakePVESettings:
    return FakePVESettings()
