from dataclasses import dataclass
from urllib.parse import quote

from machine_driver.config import SUPPORTED_STORAGE_FORMATS, DriverSettings
from machine_driver.errors import UnsupportedStorageFormatError


RAW_ONLY_BACKENDS = {"lvmthin", "zfs", "zfspool", "ceph", "rbd"}
DIRECTORY_BACKENDS = {"dir"}

VM_AGENT = "1"
VM_AUTOSTART = "1"
VM_OSTYPE = "l26"
VM_KVM = "1"


@dataclass
class VirtualMachineSpec:
    identifier: str
    name: str
    node_name: str
    pool_name: str
    sockets: int
    cores: int
    memory_mb: int
    network_spec: str
    disk_ref: str
    boot_image_ref: str
    guest_authorized_keys: str = ""

    def to_form(self) -> dict[str, str]:
        form = {
            "vmid": self.identifier,
            "name": self.name,
            "agent": VM_AGENT,
            "autostart": VM_AUTOSTART,
            "ostype": VM_OSTYPE,
            "kvm": VM_KVM,
            "memory": str(self.memory_mb),
            "sockets": str(self.sockets),
            "cores": str(self.cores),
            "net0": self.network_spec,
            "scsi0": self.disk_ref,
            "cdrom": self.boot_image_ref,
        }
        if self.pool_name:
            form["pool"] = self.pool_name
        if self.guest_authorized_keys:
            # the API expects sshkeys url-encoded
            form["sshkeys"] = quote(self.guest_authorized_keys, safe="")
        return form


def check_storage_format(storage_format: str) -> None:
    if storage_format not in SUPPORTED_STORAGE_FORMATS:
        raise UnsupportedStorageFormatError(storage_format)


def check_backend_format(storage_format: str, backend: str, storage: str = "") -> None:
    if backend in RAW_ONLY_BACKENDS and storage_format != "raw":
        raise UnsupportedStorageFormatError(storage_format, backend, storage)


def disk_filename(
    vmid: str, storage_format: str, backend: str, storage: str = ""
) -> str:
    check_backend_format(storage_format, backend, storage)
    filename = f"vm-{vmid}-disk-0"
    if backend in DIRECTORY_BACKENDS:
        filename += f".{storage_format}"
    return filename


def disk_reference(storage: str, vmid: str, filename: str, storage_format: str) -> str:
    if storage_format == "qcow2":
        return f"{storage}:{vmid}/{filename}"
    return f"{storage}:{filename}"


def vlan_tag(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def network_spec(model: str, bridge: str, vlan: str | None = None) -> str:
    net = f"model={model},bridge={bridge}"
    tag = vlan_tag(vlan)
    if tag is not None:
        net = f"{net},tag={tag}"
    return net


def build_vm_spec(
    settings: DriverSettings,
    *,
    machine_name: str,
    vmid: str,
    disk_ref: str,
) -> VirtualMachineSpec:
    return VirtualMachineSpec(
        identifier=vmid,
        name=machine_name,
        node_name=settings.node,
        pool_name=settings.pool,
        sockets=settings.cpu_sockets,
        cores=settings.cpu_cores,
        memory_mb=settings.memory_mb,
        network_spec=network_spec(
            settings.net_model, settings.net_bridge, settings.net_vlantag
        ),
        disk_ref=disk_ref,
        boot_image_ref=settings.image_file,
        guest_authorized_keys=settings.guest_ssh_authorized_keys,
    )
