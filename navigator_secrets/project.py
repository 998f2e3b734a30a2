"""
Project Context — Per-command state for one project.

A command builds a ``ProjectContext`` once with ``ProjectContext.load()``
and passes it explicitly to every operation. Loading resolves the project
root, loads (or creates) the user identity, migrates a legacy project and
loads the validated project config. Nothing is kept in module globals.

Also provides project initialization, encryption and decryption of the
project's secret files, a per-file encryption status, and a consistency
report over key files with removal of orphaned ones.

Security Note:
    The unwrapped project key is returned to the caller and never stored
    on the context, logged or written to the audit log.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Union

from pydantic import BaseModel, Field

from . import audit
from .audit import Operation
from .conf import OWNER_RW, PROJECT_DIR, SHARED_READ, ProjectPaths, Settings
from .exceptions import (
    DeviceNotFound,
    ProjectAlreadyInitialized,
    ProjectNotInitialized,
)
from .files import (
    encrypted_path_for,
    find_secret_files,
    plain_path_for,
    relative_names,
)
from .identity.config import (
    load_project_identity,
    load_user_identity,
    save_project_identity,
    save_user_identity,
)
from .identity.models import (
    DeviceRecord,
    ProjectConfig,
    ProjectIdentity,
    UserConfig,
    UserIdentity,
)
from .migration import (
    EmailSource,
    MigrationResult,
    is_legacy_project,
    migrate_project,
    migrate_user_keys,
    update_user_config_project_uuid,
)
from .utils import atomic_write, new_uuid, read_file
from .vault.crypto import (
    decrypt_file,
    encrypt_file,
    generate_device_keypair,
    generate_symmetric_key,
    load_public_key,
    unwrap_symmetric_key,
    wrap_symmetric_key,
)
from .vault.keystore import LocalKeyStore, ProjectKeyStore

logger = logging.getLogger("navigator.secrets")

PathLike = Union[str, Path]


def find_project_root(start: Optional[PathLike] = None) -> Path:
    """Walk up from ``start`` to the directory holding ``.navigator``.

    Raises:
        ProjectNotInitialized: If no ancestor holds a project directory.
    """
    current = Path(start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / PROJECT_DIR).is_dir():
            return candidate
    raise ProjectNotInitialized(f"No {PROJECT_DIR} directory found above {current}")


class ProjectContext:
    """Explicit state for one command against one project."""

    def __init__(
        self,
        settings: Settings,
        paths: ProjectPaths,
        user_config: UserConfig,
        config: ProjectConfig,
        migration: Optional[MigrationResult] = None,
    ):
        self.settings = settings
        self.paths = paths
        self.user_config = user_config
        self.config = config
        self.migration = migration
        self.keys = ProjectKeyStore(paths)
        self.local_keys = LocalKeyStore(settings)

    def __repr__(self) -> str:
        return f"<ProjectContext project={self.project_uuid} root={self.root}>"

    @property
    def identity(self) -> UserIdentity:
        return self.user_config.user

    @property
    def project(self) -> ProjectIdentity:
        return self.config.project

    @property
    def project_uuid(self) -> str:
        return self.config.project.uuid

    @property
    def root(self) -> Path:
        return self.paths.root

    @classmethod
    def load(
        cls,
        path: Optional[PathLike] = None,
        settings: Optional[Settings] = None,
        emails: EmailSource = None,
    ) -> "ProjectContext":
        """Load everything a command needs, migrating a legacy project first.

        Args:
            path: Any directory inside the project; defaults to the cwd.
            settings: Per-user settings; resolved from environment when omitted.
            emails: Owner emails for legacy device names, used by migration.

        Raises:
            ProjectNotInitialized: If no project is found.
            ConfigCorrupt: If the user or project config is malformed.
            MigrationFailed: If a legacy project could not be migrated.
        """
        settings = settings or Settings.from_env()
        root = find_project_root(path)
        user_config = load_user_identity(settings)

        migration = None
        if is_legacy_project(root):
            migration = migrate_project(root, emails, user=user_config.user)
        config = load_project_identity(root)
        if migration is not None:
            migrate_user_keys(root.name, config.project.uuid, settings)
            if update_user_config_project_uuid(root.name, config.project.uuid, settings):
                user_config = load_user_identity(settings)

        logger.debug("Loaded project %s from %s", config.project.uuid, root)
        return cls(settings, ProjectPaths(root), user_config, config, migration)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> None:
        save_project_identity(self.config, self.root)

    def save_user(self) -> None:
        save_user_identity(self.user_config, self.settings)

    def audit(self, operation: Operation, **fields) -> None:
        """Append an audit entry attributed to this machine's user."""
        audit.log(audit.entry_for(operation, self.identity, **fields), self.root)

    # ------------------------------------------------------------------
    # This machine's device
    # ------------------------------------------------------------------

    def _match_local_public_key(self) -> Optional[str]:
        path = self.local_keys.public_key_path(self.project_uuid)
        if not path.exists():
            return None
        local = load_public_key(read_file(path)).public_numbers()
        for device in self.config.devices:
            shared = self.keys.public_key_path(device.device_uuid)
            if shared.exists() and load_public_key(read_file(shared)).public_numbers() == local:
                return device.device_uuid
        return None

    def current_device_uuid(self) -> str:
        """UUID of the device this machine uses in the project.

        Taken from the user config; otherwise found by matching the local
        public key against the project's public keys, and then remembered.

        Raises:
            DeviceNotFound: If this machine has no registered device.
        """
        entry = self.user_config.projects.get(self.project_uuid)
        if entry and entry.device_uuid and self.config.get_device(entry.device_uuid):
            return entry.device_uuid

        device_uuid = self._match_local_public_key()
        if device_uuid is None:
            raise DeviceNotFound(
                f"This machine has no registered device in project {self.project_uuid}"
            )
        record = self.config.get_device(device_uuid)
        self.user_config.set_project(
            self.project_uuid, device_uuid, record.device_name, self.project.name,
        )
        self.save_user()
        return device_uuid

    def unlock(self, private_key=None, passphrase: Optional[bytes] = None) -> bytes:
        """Unwrap the project key with this machine's private key.

        Raises:
            DeviceNotFound: If this machine has no registered device.
            NoProjectKey: If no wrapped key or local private key exists.
            DecryptionFailed: If the private key cannot unwrap the key.
        """
        device_uuid = self.current_device_uuid()
        wrapped = self.keys.read_wrapped_key(device_uuid)
        if private_key is None:
            private_key = self.local_keys.load_private_key(self.project_uuid, passphrase)
        return unwrap_symmetric_key(wrapped, private_key)


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def init_project(
    path: PathLike,
    email: str,
    device_name: str,
    project_name: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> ProjectContext:
    """Create a new project with this machine as its first device.

    Args:
        path: Project root.
        email: Owner of the first device; also stored as the user email
            when none is set yet.
        device_name: Name of the first device.
        project_name: Display name; defaults to the directory name.
        settings: Per-user settings; resolved from environment when omitted.

    Returns:
        Context for the new project.

    Raises:
        ProjectAlreadyInitialized: If a project (or legacy layout) exists.
    """
    settings = settings or Settings.from_env()
    root = Path(path).resolve()
    paths = ProjectPaths(root)
    if paths.config.exists() or is_legacy_project(root):
        raise ProjectAlreadyInitialized(f"A project already exists at {root}")

    user_config = load_user_identity(settings)
    if not user_config.user.email:
        user_config.user.email = email

    project = ProjectIdentity(uuid=new_uuid(), name=project_name or root.name)
    record = DeviceRecord(device_uuid=new_uuid(), owner_email=email, device_name=device_name)
    config = ProjectConfig(project=project)
    config.add_device(record)

    keypair = generate_device_keypair(settings.rsa_key_size)
    symmetric_key = generate_symmetric_key()

    ctx = ProjectContext(settings, paths, user_config, config)
    ctx.keys.ensure_layout()
    ctx.keys.write_public_key(record.device_uuid, keypair.public_key)
    ctx.keys.write_wrapped_key(
        record.device_uuid, wrap_symmetric_key(symmetric_key, keypair.public_key),
    )
    ctx.local_keys.save_keypair(project.uuid, keypair)
    ctx.save()
    config.project.path = root

    user_config.set_project(project.uuid, record.device_uuid, device_name, project.name)
    ctx.save_user()

    logger.info("Initialized project %s at %s", project.uuid, root)
    ctx.audit(Operation.INIT, device=record.device_uuid)
    return ctx


# ---------------------------------------------------------------------------
# Secret files
# ---------------------------------------------------------------------------

def encrypt_secrets(
    ctx: ProjectContext,
    symmetric_key: bytes,
    files: Optional[Iterable[PathLike]] = None,
) -> list[Path]:
    """Encrypt plaintext secret files to ``<name>.enc`` beside them.

    Args:
        ctx: Project context.
        symmetric_key: Project key.
        files: Plaintext files; every ``.env*`` file of the project when omitted.

    Returns:
        Paths of the written encrypted files.
    """
    sources = [Path(f) for f in files] if files is not None else find_secret_files(ctx.root)
    written = []
    for source in sources:
        target = encrypted_path_for(source)
        atomic_write(target, encrypt_file(read_file(source), symmetric_key), OWNER_RW)
        written.append(target)
        logger.debug("Encrypted %s", source)
    logger.info("Encrypted %d secret file(s) in project %s", len(written), ctx.project_uuid)
    ctx.audit(Operation.ENCRYPT, files=relative_names(ctx.root, sources))
    return written


def decrypt_secrets(
    ctx: ProjectContext,
    symmetric_key: bytes,
    files: Optional[Iterable[PathLike]] = None,
) -> list[Path]:
    """Decrypt ``.enc`` files back to plaintext beside them.

    Every file is decrypted before any plaintext is written, so a tampered
    file leaves the working tree untouched.

    Raises:
        IntegrityCheckFailed: If any file fails authentication.
    """
    sources = (
        [Path(f) for f in files] if files is not None
        else find_secret_files(ctx.root, encrypted=True)
    )
    plaintexts = [(plain_path_for(s), decrypt_file(read_file(s), symmetric_key)) for s in sources]
    written = []
    for target, plaintext in plaintexts:
        atomic_write(target, plaintext, SHARED_READ)
        written.append(target)
    logger.info("Decrypted %d secret file(s) in project %s", len(written), ctx.project_uuid)
    ctx.audit(Operation.DECRYPT, files=relative_names(ctx.root, sources))
    return written


# ---------------------------------------------------------------------------
# Consistency
# ---------------------------------------------------------------------------

class ConsistencyReport(BaseModel):
    """Mismatches between device records and key files on disk.

    ``pending_devices`` (records without a wrapped key) are devices awaiting
    access and do not make the report fail.
    """

    missing_public_keys: list[str] = Field(default_factory=list)
    pending_devices: list[str] = Field(default_factory=list)
    orphan_public_keys: list[str] = Field(default_factory=list)
    orphan_wrapped_keys: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (
            self.missing_public_keys
            or self.orphan_public_keys or self.orphan_wrapped_keys
        )


def check_consistency(ctx: ProjectContext) -> ConsistencyReport:
    """Compare device records against ``.pub`` and ``.key`` files."""
    registered = {d.device_uuid for d in ctx.config.devices}
    public = set(ctx.keys.public_key_stems())
    wrapped = set(ctx.keys.wrapped_key_stems())
    report = ConsistencyReport(
        missing_public_keys=sorted(registered - public),
        pending_devices=sorted(registered - wrapped),
        orphan_public_keys=sorted(public - registered),
        orphan_wrapped_keys=sorted(wrapped - registered),
    )
    if not report.ok:
        logger.warning("Project %s key files are inconsistent: %s", ctx.project_uuid, report)
    return report


class CleanResult(BaseModel):
    orphans: list[Path] = Field(default_factory=list)
    removed: list[Path] = Field(default_factory=list)
    dry_run: bool = False


def clean_orphans(ctx: ProjectContext, dry_run: bool = False) -> CleanResult:
    """Delete ``.pub`` and ``.key`` files that belong to no registered device.

    Such files are left behind by interrupted revocations or by hand
    edits. With ``dry_run`` nothing is deleted. Audited as ``clean`` when
    anything was removed.
    """
    report = check_consistency(ctx)
    orphans = [ctx.keys.public_key_path(u) for u in report.orphan_public_keys]
    orphans += [ctx.keys.wrapped_key_path(u) for u in report.orphan_wrapped_keys]
    result = CleanResult(orphans=orphans, dry_run=dry_run)
    if dry_run or not orphans:
        return result

    for path in orphans:
        path.unlink(missing_ok=True)
        result.removed.append(path)
        logger.debug("Removed orphaned key file %s", path)
    logger.info(
        "Removed %d orphaned key file(s) from project %s", len(result.removed), ctx.project_uuid,
    )
    ctx.audit(Operation.CLEAN, files=relative_names(ctx.root, result.removed))
    return result


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class FileStatus(str, Enum):
    CURRENT = "current"
    STALE = "stale"
    UNENCRYPTED = "unencrypted"
    ENCRYPTED_ONLY = "encrypted_only"


class SecretFileStatus(BaseModel):
    path: str
    status: FileStatus
    plaintext_mtime: Optional[datetime] = None
    encrypted_mtime: Optional[datetime] = None


class StatusReport(BaseModel):
    project_name: str
    files: list[SecretFileStatus] = Field(default_factory=list)

    @property
    def summary(self) -> dict[FileStatus, int]:
        counts = {state: 0 for state in FileStatus}
        for item in self.files:
            counts[item.status] += 1
        return counts


def _mtime(path: Path) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    except FileNotFoundError:
        return None


def status(ctx: ProjectContext) -> StatusReport:
    """Encryption state of every secret file, sorted by relative path.

    A file is ``current`` when its ``.enc`` is newer than the plaintext,
    ``stale`` when the plaintext changed after encryption, ``unencrypted``
    without a ``.enc`` and ``encrypted_only`` without a plaintext.
    """
    bases = set(find_secret_files(ctx.root))
    bases.update(plain_path_for(p) for p in find_secret_files(ctx.root, encrypted=True))

    files = []
    for base in bases:
        plain_at = _mtime(base)
        enc_at = _mtime(encrypted_path_for(base))
        if plain_at is None:
            state = FileStatus.ENCRYPTED_ONLY
        elif enc_at is None:
            state = FileStatus.UNENCRYPTED
        elif enc_at > plain_at:
            state = FileStatus.CURRENT
        else:
            state = FileStatus.STALE
        files.append(SecretFileStatus(
            path=relative_names(ctx.root, [base])[0],
            status=state,
            plaintext_mtime=plain_at,
            encrypted_mtime=enc_at,
        ))
    files.sort(key=lambda f: f.path)
    return StatusReport(project_name=ctx.project.name, files=files)
