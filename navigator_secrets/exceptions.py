"""
Navigator Secrets Exceptions.

Every error carries enough context (file, device, email) for the caller to
act on it. Cryptographic failures are never retried or downgraded.
"""
from pathlib import Path
from typing import Optional


class SecretsError(Exception):
    """Base class for all Navigator Secrets errors."""


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------

class ConfigCorrupt(SecretsError):
    """Persisted config is unparseable or structurally invalid."""

    def __init__(self, path: Optional[Path], field: str, reason: str):
        self.path = path
        self.field = field
        self.reason = reason
        where = f" in {path}" if path else ""
        super().__init__(f"Invalid field '{field}'{where}: {reason}")


class ProjectNotInitialized(SecretsError):
    """No project config exists at the given path."""


class ProjectAlreadyInitialized(SecretsError):
    """A project config already exists at the given path."""


class NoProjectKey(SecretsError):
    """No symmetric project key is available."""


# ---------------------------------------------------------------------------
# Caller-correctable input
# ---------------------------------------------------------------------------

class DeviceNameConflict(SecretsError):
    """The device name is already used by this email within the project."""

    def __init__(self, email: str, device_name: str):
        self.email = email
        self.device_name = device_name
        super().__init__(
            f"Device name '{device_name}' is already registered for {email}"
        )


class DeviceNotFound(SecretsError):
    """The requested device is not registered in the project."""


class UserNotFound(SecretsError):
    """The requested email owns no devices in the project."""


class InvalidEmail(SecretsError):
    """An email address is missing or malformed."""


class DeviceAlreadyRegistered(SecretsError):
    """This machine already has a device in the project."""


# ---------------------------------------------------------------------------
# Cryptography
# ---------------------------------------------------------------------------

class KeyFormatInvalid(SecretsError):
    """A key could not be parsed or is not an RSA key."""


class PublicKeyNotFound(SecretsError):
    """A registered device has no public key file."""


class DecryptionFailed(SecretsError):
    """A wrapped symmetric key could not be unwrapped."""


class IntegrityCheckFailed(SecretsError):
    """An encrypted file failed authentication."""


# ---------------------------------------------------------------------------
# Multi-step operations
# ---------------------------------------------------------------------------

class RotationAborted(SecretsError):
    """A rotation failed.

    Before commit, prior state is intact and ``unmoved`` is empty. A failure
    while moving artifacts into place lists the targets still holding
    data for the old key in ``unmoved``.
    """

    def __init__(self, message: str, unmoved: Optional[list[Path]] = None):
        self.unmoved = list(unmoved or [])
        super().__init__(message)


class MigrationFailed(SecretsError):
    """Legacy project migration failed; the backup was preserved."""

    def __init__(self, message: str, backup_path: Optional[Path] = None):
        self.backup_path = backup_path
        if backup_path:
            message = f"{message} (backup preserved at {backup_path})"
        super().__init__(message)
