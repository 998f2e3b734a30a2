"""
Vault Key Store — Per-device key material on disk.

Two stores:
- ``ProjectKeyStore``: the shared project directory, one ``<uuid>.pub`` and
  one ``<uuid>.key`` (wrapped project key) per device.
- ``LocalKeyStore``: the machine-local private key store, one directory per
  joined project named by project UUID.

Security Note:
    Private keys and wrapped keys are written owner-only (0600).
    Only device UUIDs appear in shared filenames.
"""
import logging
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from ..conf import (
    OWNER_RW,
    PRIVATE_KEY_NAME,
    PUBLIC_KEY_EXT,
    PUBLIC_KEY_NAME,
    SHARED_READ,
    WRAPPED_KEY_EXT,
    ProjectPaths,
    Settings,
)
from ..exceptions import NoProjectKey, PublicKeyNotFound
from ..utils import ensure_dir, read_file, write_file
from .crypto import (
    DeviceKeypair,
    load_private_key,
    load_public_key,
    serialize_private_key,
    serialize_public_key,
)

logger = logging.getLogger("navigator.secrets")


class ProjectKeyStore:
    """Public keys and wrapped project keys in the shared project directory."""

    def __init__(self, paths: ProjectPaths):
        self.paths = paths

    def public_key_path(self, device_uuid: str) -> Path:
        return self.paths.public_keys / f"{device_uuid}{PUBLIC_KEY_EXT}"

    def wrapped_key_path(self, device_uuid: str) -> Path:
        return self.paths.wrapped_keys / f"{device_uuid}{WRAPPED_KEY_EXT}"

    def ensure_layout(self) -> None:
        ensure_dir(self.paths.public_keys)
        ensure_dir(self.paths.wrapped_keys)

    def write_public_key(self, device_uuid: str, public_key: rsa.RSAPublicKey) -> Path:
        path = self.public_key_path(device_uuid)
        write_file(path, serialize_public_key(public_key), SHARED_READ)
        return path

    def read_public_key(self, device_uuid: str) -> rsa.RSAPublicKey:
        """Load a device's published public key.

        Raises:
            PublicKeyNotFound: If the device has no public key file.
            KeyFormatInvalid: If the file cannot be parsed.
        """
        path = self.public_key_path(device_uuid)
        try:
            data = read_file(path)
        except FileNotFoundError as err:
            raise PublicKeyNotFound(
                f"No public key for device {device_uuid} at {path}"
            ) from err
        return load_public_key(data)

    def has_public_key(self, device_uuid: str) -> bool:
        return self.public_key_path(device_uuid).exists()

    def write_wrapped_key(self, device_uuid: str, wrapped: bytes) -> Path:
        path = self.wrapped_key_path(device_uuid)
        write_file(path, wrapped, OWNER_RW)
        return path

    def read_wrapped_key(self, device_uuid: str) -> bytes:
        """Return the wrapped project key for a device.

        Raises:
            NoProjectKey: If the device has no wrapped key file.
        """
        path = self.wrapped_key_path(device_uuid)
        try:
            return read_file(path)
        except FileNotFoundError as err:
            raise NoProjectKey(
                f"No wrapped project key for device {device_uuid} at {path}"
            ) from err

    def has_wrapped_key(self, device_uuid: str) -> bool:
        return self.wrapped_key_path(device_uuid).exists()

    def device_files(self, device_uuid: str) -> list[Path]:
        return [self.public_key_path(device_uuid), self.wrapped_key_path(device_uuid)]

    def remove_device_files(self, device_uuid: str) -> list[Path]:
        """Delete a device's public and wrapped key files; returns those removed."""
        removed = []
        for path in self.device_files(device_uuid):
            if path.exists():
                path.unlink()
                removed.append(path)
        logger.debug("Removed %d key file(s) for device %s", len(removed), device_uuid)
        return removed

    def _stems(self, directory: Path, ext: str) -> list[str]:
        if not directory.is_dir():
            return []
        return sorted(
            p.name[:-len(ext)] for p in directory.iterdir()
            if p.is_file() and p.name.endswith(ext)
        )

    def public_key_stems(self) -> list[str]:
        return self._stems(self.paths.public_keys, PUBLIC_KEY_EXT)

    def wrapped_key_stems(self) -> list[str]:
        return self._stems(self.paths.wrapped_keys, WRAPPED_KEY_EXT)


class LocalKeyStore:
    """Machine-local private keys, one directory per project UUID."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def key_dir(self, project_uuid: str) -> Path:
        return self.settings.keys_dir / project_uuid

    def private_key_path(self, project_uuid: str) -> Path:
        return self.key_dir(project_uuid) / PRIVATE_KEY_NAME

    def public_key_path(self, project_uuid: str) -> Path:
        return self.key_dir(project_uuid) / PUBLIC_KEY_NAME

    def save_keypair(
        self,
        project_uuid: str,
        keypair: DeviceKeypair,
        passphrase: Optional[bytes] = None,
    ) -> Path:
        ensure_dir(self.key_dir(project_uuid))
        path = self.private_key_path(project_uuid)
        write_file(path, serialize_private_key(keypair.private_key, passphrase), OWNER_RW)
        write_file(
            self.public_key_path(project_uuid),
            serialize_public_key(keypair.public_key),
            OWNER_RW,
        )
        logger.info("Stored device keypair for project %s", project_uuid)
        return path

    def load_private_key(
        self, project_uuid: str, passphrase: Optional[bytes] = None,
    ) -> rsa.RSAPrivateKey:
        """Load this machine's private key for a project.

        Raises:
            NoProjectKey: If no private key is stored for the project.
            KeyFormatInvalid: If the stored key cannot be parsed.
        """
        path = self.private_key_path(project_uuid)
        try:
            data = read_file(path)
        except FileNotFoundError as err:
            raise NoProjectKey(
                f"No private key for project {project_uuid} at {path}"
            ) from err
        return load_private_key(data, passphrase)

    def has_keypair(self, project_uuid: str) -> bool:
        return self.private_key_path(project_uuid).exists()
