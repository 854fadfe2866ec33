"""Blocking SSH session to a freshly provisioned guest.

asyncssh is asynchronous; the driver workflow is not. ``GuestSSHSession``
owns a private event loop for the lifetime of one connection so that the
command channel and the file-transfer channel share a single authenticated
transport, and both are torn down on every exit path.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from typing import Any, Awaitable

import asyncssh

from machine_driver.errors import TrustAuthError, TrustTransportError


logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    exit_status: int | None
    stdout: str
    stderr: str


class TransferFailed(RuntimeError):
    def __init__(self, path: str, detail: str, exit_status: int | None = None):
        self.path = path
        self.detail = detail
        self.exit_status = exit_status
        super().__init__(f"write to {path} failed: {detail}")


class GuestSSHSession:
    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        connect_timeout: float = 30,
        command_timeout: float = 60,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._loop: asyncio.AbstractEventLoop | None = None
        self._conn: asyncssh.SSHClientConnection | None = None

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def __enter__(self) -> "GuestSSHSession":
        self._loop = asyncio.new_event_loop()
        try:
            self._conn = self._call(
                asyncssh.connect(
                    self.host,
                    port=self.port,
                    username=self.username,
                    password=self.password,
                    known_hosts=None,
                    client_keys=None,
                    connect_timeout=self.connect_timeout,
                )
            )
        except BaseException:
            self._loop.close()
            self._loop = None
            raise
        logger.debug("ssh session open target=%s", self.target)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        loop, conn = self._loop, self._conn
        self._loop, self._conn = None, None
        if loop is None:
            return
        try:
            if conn is not None:
                conn.close()
                loop.run_until_complete(conn.wait_closed())
        except (asyncssh.Error, OSError) as exc:
            logger.debug("ssh close failed target=%s: %s", self.target, exc)
        finally:
            loop.close()

    def _call(self, coro: Awaitable[Any]) -> Any:
        if self._loop is None:
            raise RuntimeError("ssh session is not open")
        try:
            return self._loop.run_until_complete(coro)
        except asyncssh.PermissionDenied as exc:
            raise TrustAuthError(self.target, exc.reason or str(exc)) from exc
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as exc:
            raise TrustTransportError(self.target, str(exc) or exc.__class__.__name__) from exc

    def run(self, command: str) -> CommandResult:
        result = self._call(
            self._conn.run(command, check=False, timeout=self.command_timeout)
        )
        return CommandResult(
            exit_status=result.exit_status,
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
        )

    def write_file(self, path: str, data: bytes) -> None:
        """Overwrite ``path`` with ``data``.

        Uses SFTP when the guest offers the subsystem and falls back to
        ``cat >`` over an exec channel otherwise (minimal boot images often
        ship without sftp-server). Raises TransferFailed if the channel
        reports a failure; the caller decides whether that is final.
        """
        self._call(self._write_file(path, data))

    async def _write_file(self, path: str, data: bytes) -> None:
        try:
            async with self._conn.start_sftp_client() as sftp:
                async with sftp.open(path, "wb") as handle:
                    await handle.write(data)
            return
        except asyncssh.SFTPError as exc:
            raise TransferFailed(path, f"sftp: {exc.reason or exc}") from exc
        except asyncssh.ChannelOpenError as exc:
            logger.debug(
                "sftp unavailable target=%s, falling back to exec: %s", self.target, exc
            )

        result = await self._conn.run(
            f"cat > {shlex.quote(path)}",
            input=data,
            encoding=None,
            check=False,
            timeout=self.command_timeout,
        )
        if result.exit_status != 0:
            stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
            raise TransferFailed(
                path,
                f"exec exit status {result.exit_status}: {stderr}".rstrip(": "),
                exit_status=result.exit_status,
            )

    def read_file(self, path: str) -> bytes | None:
        result = self._call(
            self._conn.run(
                f"cat {shlex.quote(path)}",
                encoding=None,
                check=False,
                timeout=self.command_timeout,
            )
        )
        if result.exit_status != 0:
            return None
        return bytes(result.stdout or b"")
