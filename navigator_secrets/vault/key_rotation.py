"""
Vault Key Rotation — Atomic replacement of the project key.

A rotation generates a new project key, re-encrypts every secret file under
it and re-wraps it for every remaining device. All new artifacts are first
written to temporary names; the commit step persists the project config,
renames the temporaries into place and only then deletes the key files of
excluded (revoked) devices. A failure before commit discards the
temporaries and raises ``RotationAborted`` with prior state untouched.
If moving an artifact into place fails, the remaining temporaries are
removed and ``RotationAborted.unmoved`` names the targets that still hold
old-key data; the config and the moved artifacts stay committed.
Devices whose wrapped key is not yet written are not re-wrapped.

An advisory lock file (``.navigator/rotation.lock``) rejects a second
rotation started while one is running.

Security Note:
    Plaintext exists in memory only while a file is re-encrypted.
    Never log plaintext, ciphertext or key values.
"""
import os
import secrets
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator, Optional

from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import BaseModel, Field

from ..audit import Operation
from ..conf import OWNER_RW, SHARED_READ, ProjectPaths
from ..exceptions import DeviceNotFound, RotationAborted
from ..files import find_secret_files, relative_names
from ..identity.config import save_project_identity
from ..utils import atomic_write, read_file, temp_path, write_file
from .crypto import (
    decrypt_file,
    encrypt_file,
    generate_device_keypair,
    generate_symmetric_key,
    serialize_public_key,
    unwrap_symmetric_key,
    wrap_symmetric_key,
)

if TYPE_CHECKING:
    from ..project import ProjectContext

logger = logging.getLogger("navigator.secrets")


class RotationResult(BaseModel):
    """Outcome of one project key rotation."""

    secrets_reencrypted: int = 0
    devices_rewrapped: int = 0
    revoked: list[str] = Field(default_factory=list)
    removed_files: list[Path] = Field(default_factory=list)
    symmetric_key: bytes = Field(repr=False)


@contextmanager
def rotation_lock(paths: ProjectPaths) -> Iterator[Path]:
    """Hold the project's advisory rotation lock.

    Raises:
        RotationAborted: If another process holds the lock.
    """
    lock = paths.rotation_lock
    try:
        fd = os.open(lock, os.O_WRONLY | os.O_CREAT | os.O_EXCL, OWNER_RW)
    except FileExistsError:
        raise RotationAborted(
            f"Another rotation is in progress (lock {lock}); "
            "remove the lock file if no rotation is running"
        ) from None
    try:
        with os.fdopen(fd, "w") as f:
            f.write(f"{os.getpid()}\n")
        yield lock
    finally:
        lock.unlink(missing_ok=True)


def _discard(staged: list[tuple[Path, Path]]) -> None:
    for tmp, _ in staged:
        try:
            tmp.unlink(missing_ok=True)
        except OSError as err:
            logger.warning("Could not remove temporary %s: %s", tmp, err)


def rotate_project_key(
    ctx: "ProjectContext",
    symmetric_key: bytes,
    exclude: Iterable[str] = (),
) -> RotationResult:
    """Rotate the project key, dropping the ``exclude`` devices.

    Args:
        ctx: Per-command project context; its config is replaced on commit.
        symmetric_key: Current project key.
        exclude: Device UUIDs losing access; their records are removed and
            their key files deleted after the config is persisted.

    Returns:
        RotationResult with counts and the new project key.

    Raises:
        RotationAborted: On any failure before commit, if another
            rotation holds the lock, or if committing stopped partway
            (``unmoved`` is then non-empty).
    """
    excluded = list(dict.fromkeys(exclude))
    # devices still awaiting access are not granted it by a rotation
    holders = [
        d for d in ctx.config.devices
        if d.device_uuid not in excluded and ctx.keys.has_wrapped_key(d.device_uuid)
    ]
    token = secrets.token_hex(6)
    staged: list[tuple[Path, Path]] = []

    logger.info(
        "Starting key rotation for project %s (%d device(s) kept, %d excluded)",
        ctx.project_uuid, len(holders), len(excluded),
    )

    with rotation_lock(ctx.paths):
        try:
            new_key = generate_symmetric_key()
            secret_files = find_secret_files(ctx.root, encrypted=True)
            for path in secret_files:
                plaintext = decrypt_file(read_file(path), symmetric_key)
                tmp = temp_path(path, token)
                write_file(tmp, encrypt_file(plaintext, new_key), OWNER_RW)
                staged.append((tmp, path))
                logger.debug("Re-encrypted %s", path)
            for device in holders:
                public_key = ctx.keys.read_public_key(device.device_uuid)
                final = ctx.keys.wrapped_key_path(device.device_uuid)
                tmp = temp_path(final, token)
                write_file(tmp, wrap_symmetric_key(new_key, public_key), OWNER_RW)
                staged.append((tmp, final))
                logger.debug("Re-wrapped project key for device %s", device.device_uuid)

            config = ctx.config.model_copy(deep=True)
            for device_uuid in excluded:
                config.remove_device(device_uuid)
            save_project_identity(config, ctx.root)
        except Exception as err:
            _discard(staged)
            raise RotationAborted(
                f"Rotation of project {ctx.project_uuid} aborted: {err}"
            ) from err

        # commit: config is durable, move artifacts into place
        ctx.config = config
        moved = 0
        commit_error: Optional[OSError] = None
        try:
            for tmp, final in staged:
                os.replace(tmp, final)
                moved += 1
        except OSError as err:
            commit_error = err
            _discard(staged[moved:])
        removed: list[Path] = []
        for device_uuid in excluded:
            removed.extend(ctx.keys.remove_device_files(device_uuid))

        if commit_error is not None:
            unmoved = [final for _, final in staged[moved:]]
            logger.error(
                "Key rotation for project %s stopped after %d of %d artifact(s); "
                "still under the old key: %s",
                ctx.project_uuid, moved, len(staged), ", ".join(str(p) for p in unmoved),
            )
            raise RotationAborted(
                f"Rotation of project {ctx.project_uuid} could not move "
                f"{len(unmoved)} artifact(s) into place: {commit_error}",
                unmoved=unmoved,
            ) from commit_error

    result = RotationResult(
        secrets_reencrypted=len(secret_files),
        devices_rewrapped=len(holders),
        revoked=excluded,
        removed_files=removed,
        symmetric_key=new_key,
    )
    logger.info(
        "Key rotation complete: %d secret(s) re-encrypted for %d device(s)",
        result.secrets_reencrypted, result.devices_rewrapped,
    )
    return result


def sync_secrets(ctx: "ProjectContext", symmetric_key: bytes) -> RotationResult:
    """Rotate the project key without removing any device."""
    result = rotate_project_key(ctx, symmetric_key)
    ctx.audit(
        Operation.SYNC,
        files=relative_names(ctx.root, find_secret_files(ctx.root, encrypted=True)),
    )
    return result


def rotate_device_keypair(
    ctx: "ProjectContext",
    private_key: Optional[rsa.RSAPrivateKey] = None,
    device_uuid: Optional[str] = None,
) -> str:
    """Replace one device's own keypair, keeping the project key.

    The current private key unwraps the project key, a new keypair is
    generated, and the project key is re-wrapped under the new public key.

    Args:
        ctx: Per-command project context.
        private_key: Current private key; loaded from the local store
            when omitted.
        device_uuid: Device to rotate; defaults to this machine's device.

    Returns:
        The rotated device UUID.

    Raises:
        DeviceNotFound: If ``device_uuid`` is not registered.
        NoProjectKey: If the device has no wrapped key or no local key.
        DecryptionFailed: If the private key does not match.
    """
    device_uuid = device_uuid or ctx.current_device_uuid()
    if ctx.config.get_device(device_uuid) is None:
        raise DeviceNotFound(f"Device {device_uuid} is not registered in this project")
    if private_key is None:
        private_key = ctx.local_keys.load_private_key(ctx.project_uuid)

    symmetric_key = unwrap_symmetric_key(ctx.keys.read_wrapped_key(device_uuid), private_key)
    keypair = generate_device_keypair(ctx.settings.rsa_key_size)
    wrapped = wrap_symmetric_key(symmetric_key, keypair.public_key)

    ctx.local_keys.save_keypair(ctx.project_uuid, keypair)
    atomic_write(
        ctx.keys.public_key_path(device_uuid),
        serialize_public_key(keypair.public_key),
        SHARED_READ,
    )
    atomic_write(ctx.keys.wrapped_key_path(device_uuid), wrapped, OWNER_RW)

    logger.info("Rotated keypair for device %s", device_uuid)
    ctx.audit(Operation.ROTATE, device=device_uuid)
    return device_uuid
