from fastapi.testclient import TestClient

from fake_pve import app as fake
from fake_pve.config import FakePVESettings


def setup_function() -> None:
    fake.reset_state()


def _login(client: TestClient) -> dict:
    response = client.post(
        "/api2/json/access/ticket", data={"username": "root@pam", "password": "secret"}
    )
    assert response.status_code == 200
    ticket = response.json()["data"]
    return {
        "Cookie": f"PVEAuthCookie={ticket['ticket']}",
        "CSRFPreventionToken": ticket["CSRFPreventionToken"],
    }


def test_fake_pve_requires_ticket():
    client = TestClient(fake.app)
    assert client.get("/api2/json/version").status_code == 401
    bad = client.post(
        "/api2/json/access/ticket", data={"username": "root@pam", "password": "nope"}
    )
    assert bad.status_code == 401


def test_fake_pve_vm_lifecycle():
    client = TestClient(fake.app)
    headers = _login(client)

    vmid = client.get("/api2/json/cluster/nextid", headers=headers).json()["data"]
    assert vmid == "100"
    volume = client.post(
        "/api2/json/nodes/pve/storage/local-lvm/content",
        headers=headers,
        data={"filename": "vm-100-disk-0", "size": "16G", "vmid": vmid},
    )
    assert volume.json()["data"] == "local-lvm:vm-100-disk-0"

    created = client.post(
        "/api2/json/nodes/pve/qemu",
        headers=headers,
        data={"vmid": vmid, "scsi0": "local-lvm:vm-100-disk-0", "sshkeys": "ssh-rsa%20AAAA"},
    )
    upid = created.json()["data"]
    assert upid.startswith("UPID:pve:")
    task = client.get(f"/api2/json/nodes/pve/tasks/{upid}/status", headers=headers)
    assert task.json()["data"]["exitstatus"] == "OK"
    assert fake.snapshot()["vms"][vmid]["sshkeys"] == "ssh-rsa AAAA"

    client.post(f"/api2/json/nodes/pve/qemu/{vmid}/status/start", headers=headers)
    ping = client.post(f"/api2/json/nodes/pve/qemu/{vmid}/agent/ping", headers=headers)
    assert ping.status_code == 200

    running = client.delete(f"/api2/json/nodes/pve/qemu/{vmid}", headers=headers)
    assert running.status_code == 500
    client.post(f"/api2/json/nodes/pve/qemu/{vmid}/status/stop", headers=headers)
    deleted = client.delete(f"/api2/json/nodes/pve/qemu/{vmid}", headers=headers)
    assert deleted.status_code == 200
    assert fake.snapshot() == {"volumes": {}, "vms": {}}


def test_fake_pve_rejects_qcow2_on_lvmthin():
    client = TestClient(fake.app)
    headers = _login(client)
    response = client.post(
        "/api2/json/nodes/pve/storage/local-lvm/content",
        headers=headers,
        data={"filename": "vm-100-disk-0.qcow2", "size": "16G", "vmid": "100"},
    )
    assert response.status_code == 400
    assert "filename" in response.json()["errors"]


def test_fake_pve_storages_setting():
    settings = FakePVESettings(storages_csv="tank=zfspool, nfs")
    assert settings.storages == {"tank": "zfspool", "nfs": "dir"}
