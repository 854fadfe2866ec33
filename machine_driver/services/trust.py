import logging
import posixpath
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ContextManager, Protocol

from machine_driver.clients.ssh import CommandResult, GuestSSHSession, TransferFailed
from machine_driver.errors import KeyIOError, RemoteWriteRejectedError


logger = logging.getLogger(__name__)


@dataclass
class SSHTarget:
    host: str
    port: int = 22

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class GuestCredentials:
    username: str
    password: str


@dataclass
class TrustResult:
    authorized_keys_path: str
    transfer_warning: str | None = None


class GuestSession(Protocol):
    def run(self, command: str) -> CommandResult: ...

    def write_file(self, path: str, data: bytes) -> None: ...

    def read_file(self, path: str) -> bytes | None: ...


SessionFactory = Callable[[SSHTarget, GuestCredentials], ContextManager[GuestSession]]


def ssh_session_factory(connect_timeout: float = 30) -> SessionFactory:
    def factory(target: SSHTarget, credentials: GuestCredentials) -> GuestSSHSession:
        return GuestSSHSession(
            target.host,
            target.port,
            credentials.username,
            credentials.password,
            connect_timeout=connect_timeout,
        )

    return factory


def ssh_dir_for(username: str) -> str:
    if username == "root":
        return "/root/.ssh"
    return f"/home/{username}/.ssh"


def inject_trust(
    target: SSHTarget,
    credentials: GuestCredentials,
    public_key_path: str,
    session_factory: SessionFactory | None = None,
) -> TrustResult:
    """Install the public key as the guest user's only authorized key.

    The authorized_keys file is overwritten, so re-running with the same key
    converges. Whether the write landed is decided by reading the file back,
    not by the status the transfer channel reported.
    """
    if session_factory is None:
        session_factory = ssh_session_factory()
    try:
        key_data = Path(public_key_path).read_bytes()
    except OSError as exc:
        raise KeyIOError(public_key_path, str(exc)) from exc

    ssh_dir = ssh_dir_for(credentials.username)
    keys_path = posixpath.join(ssh_dir, "authorized_keys")
    where = f"{credentials.username}@{target}"

    with session_factory(target, credentials) as session:
        logger.debug("creating directory %s on %s", ssh_dir, where)
        created = session.run(f"mkdir -p {shlex.quote(ssh_dir)}")
        logger.debug("%s -> %s", target.host, created.stdout.strip())
        if created.exit_status not in (0, None):
            logger.warning(
                "mkdir exited with status=%s on %s: %s",
                created.exit_status,
                where,
                created.stderr.strip(),
            )

        logger.debug("copying public key to %s:%s", where, keys_path)
        transfer_error: TransferFailed | None = None
        try:
            session.write_file(keys_path, key_data)
        except TransferFailed as exc:
            transfer_error = exc

        written = session.read_file(keys_path)

    if written != key_data:
        detail = (
            transfer_error.detail
            if transfer_error is not None
            else "authorized_keys content differs after write"
        )
        raise RemoteWriteRejectedError(where, detail) from transfer_error

    warning = None
    if transfer_error is not None:
        warning = transfer_error.detail
        logger.warning(
            "transfer to %s reported failure (%s) but authorized_keys is in place",
            where,
            warning,
        )
    logger.info("authorized key installed on %s path=%s", where, keys_path)
    return TrustResult(authorized_keys_path=keys_path, transfer_warning=warning)
