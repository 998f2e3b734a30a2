"""
Legacy Migration — Convert plain-name key layouts to the UUID layout.

Older projects named each device's key files after a user-chosen string
(``public_keys/alice.pub``, ``secrets/alice.key``) and had no project
config. Migration assigns a project UUID and one device UUID per legacy
name, renames the key files to their UUIDs and writes ``config.json``.

The ``.navigator`` directory is copied to ``.navigator-backup-<stamp>``
before any rename. On failure every rename is undone, the backup is kept
and ``MigrationFailed`` is raised. A project that is already migrated is
left alone.
"""
import os
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Callable, Optional, Union

from pydantic import BaseModel, Field

from . import audit
from .audit import Operation
from .conf import (
    BACKUP_PREFIX,
    OWNER_RWX,
    PUBLIC_KEY_EXT,
    WRAPPED_KEY_EXT,
    ProjectPaths,
    Settings,
)
from .exceptions import MigrationFailed
from .files import relative_names
from .identity.config import (
    load_user_identity,
    save_project_identity,
    save_user_identity,
)
from .identity.models import (
    DeviceRecord,
    ProjectConfig,
    ProjectIdentity,
    UserIdentity,
    UserProjectEntry,
)
from .utils import ensure_dir, is_uuid, new_uuid, snapshot_dir, utcnow
from .vault.keystore import LocalKeyStore

logger = logging.getLogger("navigator.secrets")

MIGRATED_DEVICE_NAME = "migrated-device"
PLACEHOLDER_DOMAIN = "unknown.local"

EmailSource = Union[Mapping[str, str], Callable[[str], Optional[str]], None]


class MigratedDevice(BaseModel):
    legacy_name: str
    device_uuid: str
    email: str
    device_name: str


class MigrationResult(BaseModel):
    project_uuid: str
    backup_path: Path
    devices: list[MigratedDevice] = Field(default_factory=list)
    renamed_files: list[Path] = Field(default_factory=list)


def is_legacy_project(path: Union[str, Path, None]) -> bool:
    """True when a project has legacy ``.pub`` files but no config."""
    if not path:
        return False
    paths = ProjectPaths(path)
    if paths.config.exists() or not paths.public_keys.is_dir():
        return False
    return any(
        p.name.endswith(PUBLIC_KEY_EXT) for p in paths.public_keys.iterdir()
    )


def _email_for(legacy_name: str, emails: EmailSource) -> str:
    email = None
    if callable(emails):
        email = emails(legacy_name)
    elif emails is not None:
        email = emails.get(legacy_name)
    return email or f"{legacy_name}@{PLACEHOLDER_DOMAIN}"


def _backup(paths: ProjectPaths) -> Path:
    stamp = utcnow().strftime("%Y%m%d-%H%M%S")
    backup = paths.root / f"{BACKUP_PREFIX}{stamp}"
    suffix = 1
    while backup.exists():
        backup = paths.root / f"{BACKUP_PREFIX}{stamp}-{suffix}"
        suffix += 1
    return snapshot_dir(paths.base, backup)


def _rollback(renames: list[tuple[Path, Path]], paths: ProjectPaths) -> None:
    for src, dst in reversed(renames):
        try:
            os.replace(dst, src)
        except OSError as err:
            logger.error("Could not restore %s from %s: %s", src, dst, err)
    paths.config.unlink(missing_ok=True)


def migrate_project(
    path: Union[str, Path],
    emails: EmailSource = None,
    device_name: str = MIGRATED_DEVICE_NAME,
    user: Optional[UserIdentity] = None,
) -> Optional[MigrationResult]:
    """Migrate a legacy project in place.

    Args:
        path: Project root.
        emails: Email per legacy name, as a mapping or a callable; names
            without one get ``<name>@unknown.local``.
        device_name: Name given to every migrated device; the legacy name
            is used instead when that would collide for one email.
        user: Acting user, recorded in the audit entry.

    Returns:
        MigrationResult, or None when the project is not legacy.

    Raises:
        MigrationFailed: If any step failed; the backup path is attached.
    """
    if not is_legacy_project(path):
        return None

    paths = ProjectPaths(path)
    try:
        backup = _backup(paths)
    except OSError as err:
        raise MigrationFailed(f"Could not back up {paths.base}: {err}") from err
    logger.info("Migrating legacy project at %s (backup %s)", paths.root, backup)

    project_uuid = new_uuid()
    config = ProjectConfig(
        project=ProjectIdentity(uuid=project_uuid, name=paths.root.resolve().name),
    )
    result = MigrationResult(project_uuid=project_uuid, backup_path=backup)
    renames: list[tuple[Path, Path]] = []

    try:
        legacy = sorted(
            p.name[:-len(PUBLIC_KEY_EXT)] for p in paths.public_keys.iterdir()
            if p.is_file() and p.name.endswith(PUBLIC_KEY_EXT)
        )
        for name in legacy:
            device_uuid = name.lower() if is_uuid(name) else new_uuid()
            email = _email_for(name, emails)
            dev_name = device_name
            if config.find_device(email, dev_name) is not None:
                dev_name = name

            for directory, ext in (
                (paths.public_keys, PUBLIC_KEY_EXT),
                (paths.wrapped_keys, WRAPPED_KEY_EXT),
            ):
                src = directory / f"{name}{ext}"
                dst = directory / f"{device_uuid}{ext}"
                if src == dst or not src.exists():
                    continue
                os.rename(src, dst)
                renames.append((src, dst))
                result.renamed_files.append(dst)

            config.add_device(DeviceRecord(
                device_uuid=device_uuid, owner_email=email, device_name=dev_name,
            ))
            result.devices.append(MigratedDevice(
                legacy_name=name, device_uuid=device_uuid,
                email=email, device_name=dev_name,
            ))
            logger.debug("Migrated legacy device '%s' -> %s", name, device_uuid)

        save_project_identity(config, paths.root)
    except Exception as err:
        _rollback(renames, paths)
        raise MigrationFailed(
            f"Migration of {paths.root} failed: {err}", backup_path=backup,
        ) from err

    logger.info(
        "Migrated project %s: %d device(s), project UUID %s",
        paths.root, len(result.devices), project_uuid,
    )
    audit.log(
        audit.entry_for(
            Operation.MIGRATE, user,
            files=relative_names(paths.root, result.renamed_files),
        ),
        paths.root,
    )
    return result


# ---------------------------------------------------------------------------
# Machine-local state
# ---------------------------------------------------------------------------

def migrate_user_keys(project_name: str, project_uuid: str, settings: Settings) -> bool:
    """Move local keys to ``<keys>/<project_uuid>/{privkey,pubkey.pub}``.

    Sources, in order: files named after the project
    (``<keys>/<name>``, ``<keys>/<name>.pub``), then flat files named after
    the project UUID. Does nothing when the new layout already exists.

    Returns:
        True when keys were moved.
    """
    store = LocalKeyStore(settings)
    if store.has_keypair(project_uuid):
        return False

    keys_dir = settings.keys_dir
    by_name = keys_dir / project_name
    by_uuid = keys_dir / project_uuid
    if by_name.is_file():
        private_src, public_src = by_name, keys_dir / f"{project_name}.pub"
    elif by_uuid.is_file():
        # flat file sits where the directory must go
        private_src = by_uuid.with_name(f"{project_uuid}.migrating")
        public_src = keys_dir / f"{project_uuid}.pub.migrating"
        os.rename(by_uuid, private_src)
        flat_public = keys_dir / f"{project_uuid}.pub"
        if flat_public.exists():
            os.rename(flat_public, public_src)
    else:
        return False

    ensure_dir(store.key_dir(project_uuid), OWNER_RWX)
    os.rename(private_src, store.private_key_path(project_uuid))
    if public_src.exists():
        os.rename(public_src, store.public_key_path(project_uuid))
    logger.info("Migrated local keys of '%s' to project %s", project_name, project_uuid)
    return True


def update_user_config_project_uuid(
    project_name: str, project_uuid: str, settings: Settings,
) -> bool:
    """Re-key the user config's project entry from name to UUID.

    Returns:
        True when the user config was changed.
    """
    config = load_user_identity(settings)
    entry = config.projects.pop(project_name, None)
    if entry is None:
        return False
    config.projects[project_uuid] = UserProjectEntry(
        device_uuid=entry.device_uuid,
        device_name=entry.device_name,
        project_name=project_name,
    )
    save_user_identity(config, settings)
    return True
