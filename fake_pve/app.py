import itertools
import secrets
from threading import Lock
from urllib.parse import parse_qs, unquote

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from fake_pve.config import get_settings


app = FastAPI(title="Fake Proxmox VE")
api = APIRouter(prefix="/api2/json")

_lock = Lock()
_tickets: dict[str, str] = {}
_volumes: dict[str, dict] = {}
_vms: dict[str, dict] = {}
_tasks: dict[str, dict] = {}
_task_seq = itertools.count(1)

RAW_ONLY_BACKENDS = {"lvmthin", "zfs", "zfspool", "ceph", "rbd"}


def reset_state() -> None:
    with _lock:
        _tickets.clear()
        _volumes.clear()
        _vms.clear()
        _tasks.clear()


def snapshot() -> dict:
    with _lock:
        return {
            "volumes": {k: dict(v) for k, v in _volumes.items()},
            "vms": {k: dict(v) for k, v in _vms.items()},
        }


def _data(value) -> dict:
    return {"data": value}


def _invalid(errors: dict[str, str]) -> JSONResponse:
    return JSONResponse(
        status_code=400, content={"data": None, "errors": errors}
    )


def _failed(message: str) -> HTTPException:
    return HTTPException(status_code=500, detail=message)


async def _form(request: Request) -> dict[str, str]:
    body = (await request.body()).decode("utf-8")
    return {k: v[-1] for k, v in parse_qs(body, keep_blank_values=True).items()}


def _cookie_ticket(request: Request) -> str | None:
    for part in request.headers.get("cookie", "").split(";"):
        name, _, value = part.strip().partition("=")
        if name == "PVEAuthCookie":
            return value
    return None


def _authorize(request: Request) -> None:
    if request.headers.get("authorization", "").startswith("PVEAPIToken="):
        return
    ticket = _cookie_ticket(request)
    with _lock:
        csrf = _tickets.get(ticket or "")
    if csrf is None:
        raise HTTPException(status_code=401, detail="No ticket")
    if request.method != "GET" and request.headers.get("csrfpreventiontoken") != csrf:
        raise HTTPException(status_code=401, detail="Permission check failed")


def _new_task(node: str, kind: str, vmid: str, exitstatus: str = "OK") -> str:
    settings = get_settings()
    seq = next(_task_seq)
    upid = (
        f"UPID:{node}:{seq:08X}:{seq:08X}:00000000:{kind}:{vmid}:{settings.userid}:"
    )
    _tasks[upid] = {"upid": upid, "status": "stopped", "exitstatus": exitstatus}
    return upid


def _check_node(node: str) -> None:
    if node != get_settings().node:
        raise _failed(f"no such cluster node '{node}'")


def _backend(storage: str) -> str:
    backend = get_settings().storages.get(storage)
    if backend is None:
        raise _failed(f"storage '{storage}' does not exist")
    return backend


def _vm(vmid: str) -> dict:
    vm = _vms.get(vmid)
    if vm is None:
        raise _failed(f"Configuration file 'qemu-server/{vmid}.conf' does not exist")
    return vm


def _agent_ready(vmid: str) -> None:
    vm = _vm(vmid)
    if vm["status"] != "running":
        raise _failed(f"VM {vmid} is not running")
    vm["pings"] += 1
    if vm["pings"] <= get_settings().agent_ready_after_pings:
        raise _failed("QEMU guest agent is not running")


@app.get("/healthz")
def healthz() -> dict:
    settings = get_settings()
    return {"status": "ok", "node": settings.node, "version": settings.version}


@api.post("/access/ticket")
async def create_ticket(request: Request):
    settings = get_settings()
    form = await _form(request)
    username, password = form.get("username"), form.get("password")
    if username != settings.userid or password != settings.password:
        raise HTTPException(status_code=401, detail="authentication failure")
    ticket = f"PVE:{settings.userid}:{secrets.token_hex(8)}"
    csrf = secrets.token_hex(8)
    with _lock:
        _tickets[ticket] = csrf
    return _data(
        {"username": settings.userid, "ticket": ticket, "CSRFPreventionToken": csrf}
    )


@api.get("/version")
def version(request: Request) -> dict:
    _authorize(request)
    settings = get_settings()
    release = settings.version.rsplit(".", 1)[0]
    return _data({"version": settings.version, "release": release})


@api.get("/cluster/nextid")
def next_id(request: Request, vmid: int | None = None):
    _authorize(request)
    with _lock:
        if vmid is not None:
            if str(vmid) in _vms:
                return _invalid({"vmid": f"VM {vmid} already exists"})
            return _data(str(vmid))
        candidate = get_settings().first_vmid
        while str(candidate) in _vms:
            candidate += 1
        return _data(str(candidate))


@api.get("/nodes/{node}/storage/{storage}/status")
def storage_status(node: str, storage: str, request: Request) -> dict:
    _authorize(request)
    _check_node(node)
    backend = _backend(storage)
    return _data(
        {
            "type": backend,
            "active": 1,
            "enabled": 1,
            "total": 500 * 1024**3,
            "avail": 400 * 1024**3,
        }
    )


@api.post("/nodes/{node}/storage/{storage}/content")
async def create_volume(node: str, storage: str, request: Request):
    _authorize(request)
    _check_node(node)
    backend = _backend(storage)
    form = await _form(request)
    missing = {
        k: "property is missing and it is not optional"
        for k in ("filename", "size", "vmid")
        if not form.get(k)
    }
    if missing:
        return _invalid(missing)
    filename = form["filename"]
    if backend in RAW_ONLY_BACKENDS and "." in filename:
        return _invalid(
            {"filename": f"storage type '{backend}' only supports raw volumes"}
        )
    if filename.endswith(".qcow2"):
        volid = f"{storage}:{form['vmid']}/{filename}"
    else:
        volid = f"{storage}:{filename}"
    with _lock:
        if volid in _volumes:
            raise _failed(f"volume '{volid}' already exists")
        _volumes[volid] = {
            "volid": volid,
            "size": form["size"],
            "vmid": form["vmid"],
            "backend": backend,
        }
    return _data(volid)


@api.delete("/nodes/{node}/storage/{storage}/content/{volume:path}")
def delete_volume(node: str, storage: str, volume: str, request: Request) -> dict:
    _authorize(request)
    _check_node(node)
    _backend(storage)
    with _lock:
        removed = _volumes.pop(volume, None)
        if removed is None:
            raise _failed(f"volume '{volume}' does not exist")
        return _data(_new_task(node, "imgdel", removed["vmid"]))


@api.post("/nodes/{node}/qemu")
async def create_vm(node: str, request: Request):
    _authorize(request)
    _check_node(node)
    form = await _form(request)
    if not form.get("vmid"):
        return _invalid({"vmid": "property is missing and it is not optional"})
    vmid = form["vmid"]
    disk = form.get("scsi0", "")
    with _lock:
        if vmid in _vms:
            raise _failed(f"unable to create VM {vmid} - VM {vmid} already exists")
        if disk and disk not in _volumes:
            return _invalid({"scsi0": f"unable to parse volume ID '{disk}'"})
        _vms[vmid] = {
            "vmid": vmid,
            "config": {k: v for k, v in form.items()},
            "sshkeys": unquote(form["sshkeys"]) if form.get("sshkeys") else None,
            "status": "stopped",
            "pings": 0,
        }
        return _data(_new_task(node, "qmcreate", vmid))


@api.post("/nodes/{node}/qemu/{vmid}/status/{action}")
def vm_status(node: str, vmid: str, action: str, request: Request) -> dict:
    _authorize(request)
    _check_node(node)
    if action not in ("start", "stop", "shutdown", "reboot"):
        raise HTTPException(status_code=501, detail=f"unknown status action '{action}'")
    with _lock:
        vm = _vm(vmid)
        if action in ("start", "reboot"):
            vm["status"] = "running"
        else:
            vm["status"] = "stopped"
            vm["pings"] = 0
        return _data(_new_task(node, f"qm{action}", vmid))


@api.delete("/nodes/{node}/qemu/{vmid}")
def delete_vm(node: str, vmid: str, request: Request) -> dict:
    _authorize(request)
    _check_node(node)
    with _lock:
        vm = _vm(vmid)
        if vm["status"] == "running":
            raise _failed(f"VM {vmid} is running - destroy failed")
        del _vms[vmid]
        disk = vm["config"].get("scsi0")
        if disk:
            _volumes.pop(disk, None)
        return _data(_new_task(node, "qmdestroy", vmid))


@api.post("/nodes/{node}/qemu/{vmid}/agent/{command}")
def agent_command(node: str, vmid: str, command: str, request: Request) -> dict:
    _authorize(request)
    _check_node(node)
    with _lock:
        _agent_ready(vmid)
    return _data({"result": {}})


@api.get("/nodes/{node}/qemu/{vmid}/agent/network-get-interfaces")
def network_interfaces(node: str, vmid: str, request: Request) -> dict:
    _authorize(request)
    _check_node(node)
    with _lock:
        _agent_ready(vmid)
    return _data(
        {
            "result": [
                {
                    "name": "lo",
                    "ip-addresses": [
                        {"ip-address-type": "ipv4", "ip-address": "127.0.0.1", "prefix": 8}
                    ],
                },
                {
                    "name": "eth0",
                    "hardware-address": "bc:24:11:00:00:01",
                    "ip-addresses": [
                        {"ip-address-type": "ipv6", "ip-address": "fe80::1", "prefix": 64},
                        {
                            "ip-address-type": "ipv4",
                            "ip-address": get_settings().guest_ip,
                            "prefix": 24,
                        },
                    ],
                },
            ]
        }
    )


@api.get("/nodes/{node}/tasks/{upid}/status")
def task_status(node: str, upid: str, request: Request) -> dict:
    _authorize(request)
    _check_node(node)
    with _lock:
        task = _tasks.get(upid)
    if task is None:
        raise _failed(f"no such task '{upid}'")
    return _data(dict(task))


app.include_router(api)
