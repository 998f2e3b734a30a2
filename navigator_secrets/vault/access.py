"""
Device Access — Register, revoke, list and rename devices of a project.

The public API of the registration/revocation protocol:
- ``register_device(ctx, email, device_name, public_key, symmetric_key)``
- ``create_device(ctx, email, device_name)``: this machine publishes its
  own key and waits, and ``grant_access(ctx, email, symmetric_key)`` then
  wraps the project key for it
- ``plan_revocation(ctx, email, device_uuid)`` — targets and confirmation policy
- ``revoke_device(ctx, email, device_uuid, symmetric_key)``
- ``revoke_all_devices(ctx, email, symmetric_key)`` — one rotation for all
- ``list_devices`` / ``find_device`` / ``rename_device``

Device states move one way: unregistered -> awaiting access -> registered ->
revoked. A device awaits access while it has a public key but no wrapped
project key. A revoked device UUID is remembered in the project config and
never handed out again.

Security Note:
    Never log key material. Only device UUIDs, device names and emails
    appear in log lines and audit entries. The caller owns interactive
    confirmation; this module only reports whether one is required.
"""
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from pydantic import BaseModel, Field

from ..audit import Operation
from ..conf import OWNER_RW
from ..exceptions import (
    DeviceAlreadyRegistered,
    DeviceNameConflict,
    DeviceNotFound,
    InvalidEmail,
    NoProjectKey,
    UserNotFound,
)
from ..identity.config import save_project_identity
from ..identity.models import DeviceRecord
from ..utils import (
    atomic_write,
    generate_device_name,
    is_valid_email,
    new_uuid,
    sanitize_device_name,
)
from .crypto import (
    PublicKeyLike,
    generate_device_keypair,
    load_public_key,
    wrap_symmetric_key,
)
from .key_rotation import RotationResult, rotate_project_key

if TYPE_CHECKING:
    from ..project import ProjectContext

logger = logging.getLogger("navigator.secrets")


class RevocationPlan(BaseModel):
    """Devices a revocation would remove, for building the confirmation text."""

    email: str
    devices: list[DeviceRecord]
    device_named: bool = False

    @property
    def count(self) -> int:
        return len(self.devices)

    @property
    def device_names(self) -> list[str]:
        return [d.device_name for d in self.devices]

    def requires_confirmation(self, force: bool = False) -> bool:
        """Whether the caller must confirm before revoking.

        Naming a device explicitly or forcing never needs confirmation;
        otherwise only a user with two or more devices does.
        """
        if self.device_named or force:
            return False
        return self.count >= 2


class RevocationResult(BaseModel):
    email: str
    revoked: list[DeviceRecord]
    removed_files: list[Path] = Field(default_factory=list)
    rotation: Optional[RotationResult] = None

    @property
    def symmetric_key(self) -> Optional[bytes]:
        """The new project key, or None when no device remains to hold one."""
        return self.rotation.symmetric_key if self.rotation else None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def list_devices(ctx: "ProjectContext", email: Optional[str] = None) -> list[DeviceRecord]:
    """Registered devices, optionally only those owned by ``email``."""
    if email is None:
        return list(ctx.config.devices)
    return ctx.config.devices_for(email)


def find_device(ctx: "ProjectContext", email: str, device_name: str) -> DeviceRecord:
    """Look up a device by owner and name.

    Raises:
        UserNotFound: If ``email`` owns no devices.
        DeviceNotFound: If the user has no device named ``device_name``.
    """
    if not ctx.config.devices_for(email):
        raise UserNotFound(f"No devices registered for {email}")
    record = ctx.config.find_device(email, device_name)
    if record is None:
        raise DeviceNotFound(f"{email} has no device named '{device_name}'")
    return record


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def _fresh_device_uuid(ctx: "ProjectContext") -> str:
    device_uuid = new_uuid()
    while ctx.config.is_known_uuid(device_uuid):
        device_uuid = new_uuid()
    return device_uuid


def _publish_device(
    ctx: "ProjectContext", record: DeviceRecord, write_files: Callable[[], None],
) -> None:
    """Write a new device's key files and persist its record.

    Any failure removes every file already written for the device, so no
    key file outlives a registration that did not complete.
    """
    ctx.keys.ensure_layout()
    config = ctx.config.model_copy(deep=True)
    config.add_device(record)
    try:
        write_files()
        save_project_identity(config, ctx.root)
    except Exception:
        removed = ctx.keys.remove_device_files(record.device_uuid)
        logger.warning(
            "Adding device %s failed; removed %d partial key file(s)",
            record.device_uuid, len(removed),
        )
        raise
    ctx.config = config


def register_device(
    ctx: "ProjectContext",
    email: str,
    device_name: str,
    public_key: PublicKeyLike,
    symmetric_key: Optional[bytes],
) -> DeviceRecord:
    """Grant a new device access to the project key.

    Args:
        ctx: Per-command project context.
        email: Owner of the device.
        device_name: Name unique among ``email``'s devices.
        public_key: The device's RSA public key (object, PEM or OpenSSH).
        symmetric_key: Current project key, as returned by ``ctx.unlock()``.

    Returns:
        The new DeviceRecord.

    Raises:
        NoProjectKey: If there is no project key to share.
        DeviceNameConflict: If ``email`` already has a device of that name.
        KeyFormatInvalid: If ``public_key`` is malformed or not RSA.
    """
    if not symmetric_key:
        raise NoProjectKey(
            f"Project {ctx.project_uuid} has no project key to share with {email}"
        )
    if ctx.config.find_device(email, device_name) is not None:
        raise DeviceNameConflict(email, device_name)

    key = load_public_key(public_key)
    wrapped = wrap_symmetric_key(symmetric_key, key)

    device_uuid = _fresh_device_uuid(ctx)
    record = DeviceRecord(
        device_uuid=device_uuid, owner_email=email, device_name=device_name,
    )

    def write_keys() -> None:
        ctx.keys.write_public_key(device_uuid, key)
        ctx.keys.write_wrapped_key(device_uuid, wrapped)

    _publish_device(ctx, record, write_keys)

    logger.info(
        "Registered device %s ('%s') for %s", device_uuid, device_name, email,
    )
    ctx.audit(Operation.REGISTER, target_user=email, device=device_uuid)
    return record


def create_device(
    ctx: "ProjectContext",
    email: Optional[str] = None,
    device_name: Optional[str] = None,
    force: bool = False,
) -> DeviceRecord:
    """Give this machine its own device in the project, awaiting access.

    Generates a keypair, keeps the private half in the local key store,
    publishes ``public_keys/<uuid>.pub`` and records the device. A member
    who holds the project key then grants access with ``grant_access``.

    Args:
        ctx: Per-command project context.
        email: Owner email; defaults to the user config email and is saved
            there when it differs.
        device_name: Defaults to a name derived from the hostname.
        force: Create a new device even when this machine already has one;
            the earlier device stays registered until revoked.

    Raises:
        InvalidEmail: If no valid email is given or configured.
        DeviceNameConflict: If ``email`` already has a device of that name.
        DeviceAlreadyRegistered: If this machine has a device and not ``force``.
    """
    email = email or ctx.identity.email
    if not is_valid_email(email):
        raise InvalidEmail(f"A valid email is required to create a device, got {email!r}")

    existing = [d.device_name for d in ctx.config.devices_for(email)]
    if device_name:
        device_name = sanitize_device_name(device_name)
        if ctx.config.find_device(email, device_name) is not None:
            raise DeviceNameConflict(email, device_name)
    else:
        device_name = generate_device_name(existing)

    if not force:
        try:
            current = ctx.current_device_uuid()
        except DeviceNotFound:
            current = None
        if current is not None:
            raise DeviceAlreadyRegistered(
                f"This machine already has device {current} in project {ctx.project_uuid}"
            )

    if ctx.identity.email != email:
        ctx.identity.email = email
        ctx.save_user()

    keypair = generate_device_keypair(ctx.settings.rsa_key_size)
    device_uuid = _fresh_device_uuid(ctx)
    record = DeviceRecord(
        device_uuid=device_uuid, owner_email=email, device_name=device_name,
    )

    def write_keys() -> None:
        ctx.keys.write_public_key(device_uuid, keypair.public_key)
        ctx.local_keys.save_keypair(ctx.project_uuid, keypair)

    _publish_device(ctx, record, write_keys)
    ctx.user_config.set_project(ctx.project_uuid, device_uuid, device_name, ctx.project.name)
    ctx.save_user()

    logger.info(
        "Created device %s ('%s') for %s; awaiting access", device_uuid, device_name, email,
    )
    ctx.audit(Operation.CREATE, device=device_uuid)
    return record


def pending_devices(ctx: "ProjectContext", email: Optional[str] = None) -> list[DeviceRecord]:
    """Registered devices that have no wrapped project key yet."""
    return [
        d for d in list_devices(ctx, email)
        if not ctx.keys.has_wrapped_key(d.device_uuid)
    ]


def grant_access(
    ctx: "ProjectContext",
    email: str,
    symmetric_key: Optional[bytes],
    device_uuid: Optional[str] = None,
) -> list[DeviceRecord]:
    """Wrap the project key for devices ``email`` already published.

    Without ``device_uuid`` every device of ``email`` awaiting access is
    granted; naming a device re-wraps the key for it even if it already
    has access.

    Returns:
        The devices granted access.

    Raises:
        NoProjectKey: If ``symmetric_key`` is missing.
        UserNotFound: If ``email`` owns no devices.
        DeviceNotFound: If ``device_uuid`` is not one of ``email``'s devices,
            or no device of ``email`` is awaiting access.
        PublicKeyNotFound: If a target device never published its key.
    """
    if not symmetric_key:
        raise NoProjectKey(
            f"Project {ctx.project_uuid} has no project key to share with {email}"
        )
    owned = ctx.config.devices_for(email)
    if not owned:
        raise UserNotFound(f"No devices registered for {email}")
    if device_uuid is not None:
        targets = [d for d in owned if d.device_uuid == device_uuid]
        if not targets:
            raise DeviceNotFound(f"Device {device_uuid} is not registered to {email}")
    else:
        targets = pending_devices(ctx, email)
        if not targets:
            raise DeviceNotFound(f"{email} has no device awaiting access")

    wrapped = {
        d.device_uuid: wrap_symmetric_key(symmetric_key, ctx.keys.read_public_key(d.device_uuid))
        for d in targets
    }
    for device in targets:
        atomic_write(
            ctx.keys.wrapped_key_path(device.device_uuid), wrapped[device.device_uuid], OWNER_RW,
        )
        logger.info(
            "Granted access to device %s ('%s') of %s",
            device.device_uuid, device.device_name, email,
        )
        ctx.audit(Operation.REGISTER, target_user=email, device=device.device_uuid)
    return targets


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------

def plan_revocation(
    ctx: "ProjectContext", email: str, device_uuid: Optional[str] = None,
) -> RevocationPlan:
    """Resolve which devices a revocation targets.

    Raises:
        UserNotFound: If ``email`` owns no devices.
        DeviceNotFound: If ``device_uuid`` is not one of ``email``'s devices.
    """
    owned = ctx.config.devices_for(email)
    if not owned:
        raise UserNotFound(f"No devices registered for {email}")
    if device_uuid is None:
        return RevocationPlan(email=email, devices=owned)
    for device in owned:
        if device.device_uuid == device_uuid:
            return RevocationPlan(email=email, devices=[device], device_named=True)
    raise DeviceNotFound(f"Device {device_uuid} is not registered to {email}")


def _revoke(
    ctx: "ProjectContext", plan: RevocationPlan, symmetric_key: Optional[bytes],
) -> RevocationResult:
    targets = [d.device_uuid for d in plan.devices]
    holders = [
        d for d in ctx.config.devices
        if d.device_uuid not in targets and ctx.keys.has_wrapped_key(d.device_uuid)
    ]

    if holders:
        if not symmetric_key:
            raise NoProjectKey(
                f"Revoking devices of {plan.email} requires the current project key"
            )
        rotation = rotate_project_key(ctx, symmetric_key, exclude=targets)
        result = RevocationResult(
            email=plan.email,
            revoked=plan.devices,
            removed_files=rotation.removed_files,
            rotation=rotation,
        )
    else:
        # nobody would hold a new key: drop records, then files
        config = ctx.config.model_copy(deep=True)
        for device_uuid in targets:
            config.remove_device(device_uuid)
        save_project_identity(config, ctx.root)
        ctx.config = config
        removed: list[Path] = []
        for device_uuid in targets:
            removed.extend(ctx.keys.remove_device_files(device_uuid))
        logger.warning(
            "Revoked the last device(s) of project %s; no device holds the project key",
            ctx.project_uuid,
        )
        result = RevocationResult(email=plan.email, revoked=plan.devices, removed_files=removed)

    for device in plan.devices:
        logger.info("Revoked device %s ('%s') of %s", device.device_uuid, device.device_name, plan.email)
        ctx.audit(Operation.REVOKE, target_user=plan.email, device=device.device_uuid)
    return result


def revoke_device(
    ctx: "ProjectContext",
    email: str,
    device_uuid: str,
    symmetric_key: Optional[bytes],
) -> RevocationResult:
    """Revoke one device and rotate the project key for the survivors.

    Raises:
        UserNotFound: If ``email`` owns no devices.
        DeviceNotFound: If ``device_uuid`` is not one of ``email``'s devices.
        NoProjectKey: If other devices remain but no key was supplied.
        RotationAborted: If the rotation failed; nothing was changed.
    """
    plan = plan_revocation(ctx, email, device_uuid)
    return _revoke(ctx, plan, symmetric_key)


def revoke_all_devices(
    ctx: "ProjectContext", email: str, symmetric_key: Optional[bytes],
) -> RevocationResult:
    """Revoke every device of ``email`` with a single rotation."""
    plan = plan_revocation(ctx, email)
    return _revoke(ctx, plan, symmetric_key)


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

def rename_device(ctx: "ProjectContext", device_uuid: str, new_name: str) -> DeviceRecord:
    """Rename a device; key filenames are keyed by UUID and do not change.

    Raises:
        DeviceNotFound: If ``device_uuid`` is not registered.
        DeviceNameConflict: If the owner already has a device named ``new_name``.
    """
    record = ctx.config.get_device(device_uuid)
    if record is None:
        raise DeviceNotFound(f"Device {device_uuid} is not registered in this project")
    if record.device_name == new_name:
        return record
    if ctx.config.find_device(record.owner_email, new_name) is not None:
        raise DeviceNameConflict(record.owner_email, new_name)

    config = ctx.config.model_copy(deep=True)
    renamed = config.get_device(device_uuid)
    old_name = renamed.device_name
    renamed.device_name = new_name
    save_project_identity(config, ctx.root)
    ctx.config = config

    entry = ctx.user_config.projects.get(ctx.project_uuid)
    if entry is not None and entry.device_uuid == device_uuid:
        entry.device_name = new_name
        ctx.save_user()
    logger.info("Renamed device %s from '%s' to '%s'", device_uuid, old_name, new_name)
    ctx.audit(Operation.RENAME, target_user=renamed.owner_email, device=device_uuid)
    return renamed
