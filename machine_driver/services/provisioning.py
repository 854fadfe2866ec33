import functools
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from machine_driver.clients.proxmox import (
    HypervisorConnector,
    ProxmoxClient,
    connector_for,
)
from machine_driver.config import DriverSettings, get_settings
from machine_driver.db import session_scope
from machine_driver.errors import (
    DriverError,
    GuestUnreachableTimeout,
    HypervisorAPIError,
    InvalidTransitionError,
    ProvisioningCancelled,
    ProvisioningTimeoutError,
    TrustTransportError,
)
from machine_driver.metrics import metrics
from machine_driver.models import Machine, MachineStatus, ProvisioningState
from machine_driver.repositories import (
    cas_machine_state,
    get_machine,
    get_or_create_machine,
    now_utc,
    reset_machine,
    write_event,
)
from machine_driver.services.definition import (
    build_vm_spec,
    check_backend_format,
    check_storage_format,
    disk_filename,
    disk_reference,
)
from machine_driver.services.keys import KeyPair, obtain_key_pair
from machine_driver.services.reachability import (
    PollOutcome,
    PollResult,
    PollSchedule,
    Sleeper,
    wait_until_reachable,
)
from machine_driver.services.trust import (
    GuestCredentials,
    SessionFactory,
    SSHTarget,
    TrustResult,
    inject_trust,
    ssh_session_factory,
)
from machine_driver.state_machine import reached


logger = logging.getLogger(__name__)

S = ProvisioningState
DOCKER_PORT = 2376

F = TypeVar("F", bound=Callable)


def serialized(method: F) -> F:
    """Run ``method`` while holding the driver's workflow lock."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class MachineDriver:
    """Provision and operate one Proxmox VM.

    The workflow is PreCheck -> volume -> VM definition -> start -> wait for
    the guest agent -> install the SSH key. Each step is persisted on the
    ``machines`` row before the next one starts, so a failed run can be
    re-invoked and resumes where it stopped. Nothing created remotely is
    deleted automatically: a volume whose VM definition was rejected stays
    recorded as VOLUME_CREATED and is reused by the next attempt, or removed
    explicitly with ``discard_orphaned_volume``.
    """

    def __init__(
        self,
        machine_name: str,
        settings: DriverSettings | None = None,
        *,
        connector: HypervisorConnector | None = None,
        session_factory: SessionFactory | None = None,
        sleeper: Sleeper | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.machine_name = machine_name
        self.settings = settings or get_settings()
        self.connector = connector or connector_for(self.settings)
        self.session_factory = session_factory or ssh_session_factory(
            self.settings.ssh_connect_timeout_sec
        )
        # re-entrant: provision() and restart() call other serialized steps
        self._lock = threading.RLock()
        self._cancel = threading.Event()
        self._sleeper = sleeper or self._cancel.wait
        self._clock = clock

        with session_scope() as session:
            machine = get_or_create_machine(session, machine_name, self.settings.node)
            if machine.state == S.REMOVED.value:
                reset_machine(session, machine)
            self.state = machine.state
            self.vmid = machine.vmid

    # persistence helpers

    def record(self) -> Machine:
        with session_scope() as session:
            machine = get_machine(session, self.machine_name)
            if machine is None:
                raise DriverError(f"machine {self.machine_name} has no record")
            return machine

    def _advance(
        self, target: ProvisioningState, payload: dict | None = None, **fields
    ) -> None:
        # compare-and-swap against the state this driver last observed
        with session_scope() as session:
            machine = get_machine(session, self.machine_name)
            if machine is None:
                raise InvalidTransitionError(self.machine_name, self.state, target.value)
            if not cas_machine_state(session, machine, self.state, target.value):
                current = machine.state
                self.state, self.vmid = machine.state, machine.vmid
                raise InvalidTransitionError(self.machine_name, current, target.value)
            for key, value in fields.items():
                setattr(machine, key, value)
            write_event(
                session,
                f"machine.{target.value.lower()}",
                payload or {},
                self.machine_name,
            )
        self.state = target.value
        if "vmid" in fields:
            self.vmid = fields["vmid"]
        logger.info(
            "machine=%s vmid=%s state=%s", self.machine_name, self.vmid, self.state
        )

    @contextmanager
    def _stage(self, stage: str) -> Iterator[None]:
        started = time.monotonic()
        try:
            yield
        except Exception as exc:
            metrics.inc(f"stage_failures_total.{stage}")
            logger.error(
                "machine=%s vmid=%s stage=%s failed: %s",
                self.machine_name,
                self.vmid,
                stage,
                exc,
            )
            with session_scope() as session:
                machine = get_machine(session, self.machine_name)
                if machine is not None:
                    machine.last_error = f"{stage}: {exc}"
                    machine.updated_at = now_utc()
                    write_event(
                        session,
                        "machine.failed",
                        {"stage": stage, "state": machine.state, "error": str(exc)},
                        self.machine_name,
                    )
            raise
        finally:
            metrics.observe(f"stage_seconds.{stage}", time.monotonic() - started)

    def _require_vmid(self) -> str:
        if not self.vmid:
            raise DriverError(f"machine {self.machine_name} has no VM identifier yet")
        return self.vmid

    # connection

    def connect(self) -> ProxmoxClient:
        with self._stage("connect"):
            client = self.connector.get()
        if self.state == S.UNCONFIGURED.value:
            with self._lock:
                if self.state == S.UNCONFIGURED.value:
                    self._advance(S.CONNECTED, {"version": client.version})
        return client

    def cancel(self) -> None:
        self._cancel.set()

    # provisioning workflow

    def ssh_key_pair(self) -> KeyPair:
        settings = self.settings
        supplied = None
        if settings.guest_ssh_private_key and settings.guest_ssh_public_key:
            supplied = (settings.guest_ssh_public_key, settings.guest_ssh_private_key)
        return obtain_key_pair(self.get_ssh_key_path(), supplied=supplied)

    @serialized
    def pre_create_check(self) -> Machine:
        settings = self.settings
        with self._stage("precheck"):
            check_storage_format(settings.storage_type)
        client = self.connect()

        if reached(self.state, S.PRECHECKED.value):
            logger.info(
                "machine=%s already prechecked with vmid=%s, reusing",
                self.machine_name,
                self.vmid,
            )
            with self._stage("precheck"):
                self.ssh_key_pair()
            return self.record()

        with self._stage("precheck"):
            backend = client.storage_type(settings.node, settings.storage)
            check_backend_format(settings.storage_type, backend, settings.storage)

            logger.debug("retrieving next ID")
            vmid = client.next_id()
            logger.debug("next ID was %s", vmid)
            filename = disk_filename(vmid, settings.storage_type, backend, settings.storage)
            key_pair = self.ssh_key_pair()

        self._advance(
            S.PRECHECKED,
            {"vmid": vmid, "backend": backend, "filename": filename},
            vmid=vmid,
            storage=settings.storage,
            storage_format=settings.storage_type,
            storage_backend=backend,
            storage_filename=filename,
            disk_ref=disk_reference(
                settings.storage, vmid, filename, settings.storage_type
            ),
            ssh_key_path=key_pair.path,
        )
        return self.record()

    @serialized
    def create(self) -> Machine:
        # a cancel only applies to the attempt it interrupted
        self._cancel.clear()
        client = self.connect()
        if not reached(self.state, S.PRECHECKED.value):
            raise InvalidTransitionError(
                self.machine_name, self.state, S.VOLUME_CREATED.value
            )
        metrics.inc("create_attempts_total")
        machine = self.record()
        settings = self.settings
        vmid = self._require_vmid()

        if self.state == S.PRECHECKED.value:
            size = f"{settings.disksize_gb}G"
            logger.debug(
                "creating disk volume %s with size %s", machine.storage_filename, size
            )
            with self._stage("create_volume"):
                volid = client.create_volume(
                    settings.node,
                    machine.storage,
                    filename=machine.storage_filename,
                    size=size,
                    vmid=vmid,
                )
            self._advance(S.VOLUME_CREATED, {"volid": volid, "size": size})
        elif self.state == S.VOLUME_CREATED.value:
            logger.warning(
                "machine=%s reusing volume %s left by a previous attempt",
                self.machine_name,
                machine.disk_ref,
            )

        if self.state == S.VOLUME_CREATED.value:
            spec = build_vm_spec(
                settings,
                machine_name=self.machine_name,
                vmid=vmid,
                disk_ref=machine.disk_ref,
            )
            logger.debug("creating VM %s with %s MB of memory", vmid, spec.memory_mb)
            with self._stage("submit_vm"):
                client.create_vm(settings.node, spec.to_form())
            self._advance(S.CREATED, {"net0": spec.network_spec, "scsi0": spec.disk_ref})

        if self.state == S.CREATED.value:
            with self._stage("start"):
                client.start_vm(settings.node, vmid)
            self._advance(S.STARTED)

        if self.state == S.STARTED.value:
            with self._stage("wait_for_guest"):
                result = self.wait_for_guest()
            self._advance(S.GUEST_REACHABLE, {"probes": result.attempts})

        if self.state == S.GUEST_REACHABLE.value:
            with self._stage("inject_trust"):
                ip, trust = self.inject_trust()
            self._advance(
                S.TRUST_INJECTED,
                {"ip": ip, "transfer_warning": trust.transfer_warning},
                guest_ip=ip,
            )
            metrics.inc("machines_provisioned_total")
        return self.record()

    @serialized
    def provision(self) -> Machine:
        self.pre_create_check()
        return self.create()

    def wait_for_guest(self) -> PollResult:
        settings = self.settings
        vmid = self._require_vmid()
        schedule = PollSchedule(
            initial_delay=settings.guest_boot_grace_sec,
            interval=settings.guest_poll_interval_sec,
            settle=settings.guest_settle_sec,
            deadline=settings.guest_ready_deadline_sec,
            max_attempts=settings.guest_max_probes,
        )
        logger.debug(
            "waiting for vm %s to become active, first wait %ss",
            vmid,
            schedule.initial_delay,
        )
        result = wait_until_reachable(
            self.ping, schedule, sleeper=self._sleeper, clock=self._clock
        )
        metrics.inc("guest_probes_total", result.attempts)
        if result.outcome == PollOutcome.CANCELLED:
            raise ProvisioningCancelled(
                f"waiting for vm {vmid} cancelled after {result.attempts} probes"
            )
        if result.outcome == PollOutcome.TIMED_OUT:
            raise GuestUnreachableTimeout(vmid, result.attempts, result.elapsed)
        return result

    def inject_trust(self) -> tuple[str, TrustResult]:
        settings = self.settings
        ip = self.get_ip()
        if not ip:
            raise TrustTransportError(
                f"vm {self.vmid}", "guest agent reported no IPv4 address"
            )
        key_path = self.ssh_key_pair().public_key_path
        result = inject_trust(
            SSHTarget(host=ip, port=self.get_ssh_port()),
            GuestCredentials(
                username=self.get_ssh_username(), password=settings.guest_password
            ),
            key_path,
            session_factory=self.session_factory,
        )
        return ip, result

    @serialized
    def discard_orphaned_volume(self) -> Machine:
        if self.state != S.VOLUME_CREATED.value:
            raise InvalidTransitionError(
                self.machine_name, self.state, S.PRECHECKED.value
            )
        client = self.connect()
        machine = self.record()
        with self._stage("discard_volume"):
            client.delete_volume(self.settings.node, machine.storage, machine.disk_ref)
        self._advance(S.PRECHECKED, {"discarded": machine.disk_ref})
        return self.record()

    # health and lifecycle

    def ping(self) -> bool:
        if not self.connector.connected or not self.vmid:
            return False
        client = self.connector.get()
        try:
            client.agent_command(self.settings.node, self.vmid, "ping")
        except HypervisorAPIError as exc:
            logger.debug("ping vm %s failed: %s", self.vmid, exc)
            return False
        return True

    def get_state(self) -> MachineStatus:
        if not self.vmid:
            return MachineStatus.UNKNOWN
        self.connector.get()
        if self.ping():
            return MachineStatus.RUNNING
        return MachineStatus.PAUSED

    def get_ip(self) -> str | None:
        client = self.connect()
        return client.guest_ipv4(self.settings.node, self._require_vmid())

    def get_url(self) -> str:
        ip = self.get_ip()
        if not ip:
            return ""
        return f"tcp://{ip}:{DOCKER_PORT}"

    def get_ssh_hostname(self) -> str | None:
        return self.get_ip()

    def get_ssh_port(self) -> int:
        return self.settings.ssh_port or 22

    def get_ssh_username(self) -> str:
        return self.settings.guest_username or "docker"

    def get_ssh_key_path(self) -> str:
        return str(self.settings.ssh_key_path(self.machine_name))

    @serialized
    def start(self) -> None:
        client = self.connect()
        with self._stage("start"):
            client.start_vm(self.settings.node, self._require_vmid())
        if self.state == S.CREATED.value:
            self._advance(S.STARTED)

    @serialized
    def stop(self) -> None:
        client = self.connect()
        with self._stage("stop"):
            client.shutdown_vm(self.settings.node, self._require_vmid())

    @serialized
    def kill(self) -> None:
        client = self.connect()
        with self._stage("kill"):
            client.stop_vm(self.settings.node, self._require_vmid())

    @serialized
    def restart(self) -> None:
        self.stop()
        self.start()

    @serialized
    def remove(self) -> None:
        client = self.connect()
        node = self.settings.node
        with self._stage("remove"):
            if reached(self.state, S.CREATED.value):
                vmid = self._require_vmid()
                try:
                    client.stop_vm(node, vmid)
                except (HypervisorAPIError, ProvisioningTimeoutError) as exc:
                    logger.warning("stop before remove of vm %s failed: %s", vmid, exc)
                client.delete_vm(node, vmid)
            elif self.state == S.VOLUME_CREATED.value:
                machine = self.record()
                client.delete_volume(node, machine.storage, machine.disk_ref)
        self._advance(S.REMOVED)
