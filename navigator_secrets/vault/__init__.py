"""Secrets Vault — Device keys, project key wrapping and access control.

Security Note (Threat Model):
    Revocation rotates the project key, so a revoked device cannot read
    the wrapped key or any secret file written after its revocation.
    Plaintext it copied before revocation stays exposed; protecting
    already exfiltrated data is out of scope.
    Private keys never leave the machine-local key store.
"""

from .crypto import (
    DeviceKeypair,
    generate_device_keypair,
    generate_symmetric_key,
    wrap_symmetric_key,
    unwrap_symmetric_key,
    encrypt_file,
    decrypt_file,
)
from .keystore import ProjectKeyStore, LocalKeyStore
from .key_rotation import (
    RotationResult,
    rotate_project_key,
    sync_secrets,
    rotate_device_keypair,
)
from .access import (
    RevocationPlan,
    RevocationResult,
    register_device,
    create_device,
    pending_devices,
    grant_access,
    plan_revocation,
    revoke_device,
    revoke_all_devices,
    list_devices,
    find_device,
    rename_device,
)

__all__ = [
    "DeviceKeypair",
    "generate_device_keypair",
    "generate_symmetric_key",
    "wrap_symmetric_key",
    "unwrap_symmetric_key",
    "encrypt_file",
    "decrypt_file",
    "ProjectKeyStore",
    "LocalKeyStore",
    "RotationResult",
    "rotate_project_key",
    "sync_secrets",
    "rotate_device_keypair",
    "RevocationPlan",
    "RevocationResult",
    "register_device",
    "create_device",
    "pending_devices",
    "grant_access",
    "plan_revocation",
    "revoke_device",
    "revoke_all_devices",
    "list_devices",
    "find_device",
    "rename_device",
]
