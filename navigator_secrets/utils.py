"""
navigator_secrets.utils
-----------------------
Filesystem and identifier helpers: whole-file read/write with explicit
permission bits, atomic replacement, directory snapshots, UUIDs and UTC
timestamps.
"""
import os
import re
import uuid
import shutil
import secrets
import socket
from pathlib import Path
from datetime import datetime, timezone
from typing import Iterable, Union

from .conf import OWNER_RW, OWNER_RWX

PathLike = Union[str, Path]


def read_file(path: PathLike) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def write_file(path: PathLike, data: bytes, mode: int = OWNER_RW) -> None:
    """Write ``data`` to ``path``, creating it with ``mode`` permission bits.

    The mode is applied even when the file already existed, since
    ``os.open`` only honours it on creation.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, mode)


def temp_path(path: PathLike, token: str) -> Path:
    """Sibling temporary name for ``path``."""
    path = Path(path)
    return path.with_name(f"{path.name}.tmp-{token}")


def atomic_write(path: PathLike, data: bytes, mode: int = OWNER_RW) -> None:
    """Write through a temporary sibling, then ``os.replace`` it into place."""
    path = Path(path)
    tmp = temp_path(path, secrets.token_hex(4))
    try:
        write_file(tmp, data, mode)
        with open(tmp, "rb") as f:
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def ensure_dir(path: PathLike, mode: int = OWNER_RWX) -> Path:
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True, mode=mode)
    return path


def snapshot_dir(src: PathLike, dst: PathLike) -> Path:
    """Recursive copy of ``src`` to ``dst`` preserving permission bits."""
    shutil.copytree(src, dst, copy_function=shutil.copy2)
    return Path(dst)


def new_uuid() -> str:
    return str(uuid.uuid4())


def is_uuid(value: str) -> bool:
    """True only for the canonical 8-4-4-4-12 form."""
    try:
        parsed = uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return str(parsed) == value.lower()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ts() -> str:
    # RFC3339 in UTC with microseconds
    return utcnow().strftime("%Y-%m-%dT%H:%M:%S.%fZ")


_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")
_DEVICE_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]+")


def is_valid_email(value: str) -> bool:
    return bool(value) and _EMAIL_RE.match(value) is not None


def sanitize_device_name(name: str) -> str:
    """Lowercase, with runs of unsupported characters collapsed to ``-``."""
    return _DEVICE_NAME_RE.sub("-", name.strip().lower()).strip("-_")


def generate_device_name(existing: Iterable[str]) -> str:
    """Hostname-based device name not in ``existing`` (case-insensitive).

    Conflicts get a numeric suffix: ``host``, ``host-2``, ``host-3``...
    """
    base = sanitize_device_name(socket.gethostname().split(".")[0]) or "device"
    taken = {name.lower() for name in existing}
    name, n = base, 1
    while name in taken:
        n += 1
        name = f"{base}-{n}"
    return name
