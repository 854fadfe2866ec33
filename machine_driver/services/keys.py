import logging
import os
from dataclasses import dataclass
from pathlib import Path

import asyncssh

from machine_driver.errors import KeyIOError


logger = logging.getLogger(__name__)

KEY_BITS = 2048


@dataclass
class KeyPair:
    public_key: str
    private_key: str
    path: str

    @property
    def public_key_path(self) -> str:
        return self.path + ".pub"


def public_key_path(path: str | os.PathLike) -> Path:
    path = Path(path)
    return path.with_name(path.name + ".pub")


def generate_key_pair() -> tuple[str, str]:
    key = asyncssh.generate_private_key("ssh-rsa", key_size=KEY_BITS)
    private_pem = key.export_private_key("pkcs1-pem").decode("ascii")
    public_line = key.export_public_key("openssh").decode("ascii")
    return public_line, private_pem


def _read_pair(path: Path) -> tuple[str, str] | None:
    try:
        private = path.read_text(encoding="utf-8")
        public = public_key_path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.debug("no usable key pair at %s: %s", path, exc)
        return None
    return public, private


def _write_key_file(path: Path, content: str, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
    os.chmod(path, mode)


def obtain_key_pair(
    path: str | os.PathLike, supplied: tuple[str, str] | None = None
) -> KeyPair:
    """Load the key pair at ``path``/``path.pub`` or create it.

    Existing files are returned verbatim. When either half is missing or
    unreadable both files are rewritten together, from ``supplied``
    (public, private) if given, else from a freshly generated RSA key.
    """
    path = Path(path)
    existing = _read_pair(path)
    if existing is not None:
        public, private = existing
        return KeyPair(public_key=public, private_key=private, path=str(path))

    if supplied is not None:
        public, private = supplied
        logger.info("persisting supplied key pair at %s", path)
    else:
        public, private = generate_key_pair()
        logger.info("generated new %s-bit key pair at %s", KEY_BITS, path)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        _write_key_file(path, private, 0o600)
        _write_key_file(public_key_path(path), public, 0o644)
    except OSError as exc:
        raise KeyIOError(str(path), str(exc)) from exc
    return KeyPair(public_key=public, private_key=private, path=str(path))
