"""
Tests for project initialization and the per-command context.

Tests cover:
- init_project layout and permissions
- ProjectContext loading, device resolution and unlocking
- Secret file discovery, encryption and decryption
- Consistency report over key files and removal of orphaned ones
- Per-file encryption status
"""
import os
import stat

import pytest

from navigator_secrets.audit import Operation, read_entries
from navigator_secrets.exceptions import (
    DeviceNotFound,
    IntegrityCheckFailed,
    ProjectAlreadyInitialized,
    ProjectNotInitialized,
)
from navigator_secrets.files import find_secret_files, is_secret_file
from navigator_secrets.identity import load_user_identity, save_user_identity
from navigator_secrets.project import (
    FileStatus,
    ProjectContext,
    check_consistency,
    clean_orphans,
    decrypt_secrets,
    encrypt_secrets,
    find_project_root,
    init_project,
    status,
)

ORPHAN = "7b6a5948-3726-4150-9f8e-7d6c5b4a3928"


def _mode(path):
    return stat.S_IMODE(path.stat().st_mode)


# --- Initialization ---

class TestInitProject:
    """Tests for init_project."""

    def test_layout(self, ctx):
        device_uuid = ctx.current_device_uuid()
        assert ctx.paths.config.exists()
        assert ctx.keys.public_key_path(device_uuid).exists()
        assert ctx.keys.wrapped_key_path(device_uuid).exists()
        assert ctx.local_keys.has_keypair(ctx.project_uuid)
        assert ctx.project.name == "repo"

    def test_permissions(self, ctx):
        device_uuid = ctx.current_device_uuid()
        assert _mode(ctx.keys.wrapped_key_path(device_uuid)) == 0o600
        assert _mode(ctx.local_keys.private_key_path(ctx.project_uuid)) == 0o600
        assert _mode(ctx.keys.public_key_path(device_uuid)) == 0o644

    def test_user_email_set(self, ctx, settings):
        assert load_user_identity(settings).user.email == "alice@example.com"

    def test_already_initialized(self, ctx, settings):
        with pytest.raises(ProjectAlreadyInitialized):
            init_project(ctx.root, "bob@example.com", "laptop", settings=settings)

    def test_audited(self, ctx):
        entry = read_entries(ctx.root)[0]
        assert entry.operation == Operation.INIT
        assert entry.user_email == "alice@example.com"
        assert entry.device == ctx.current_device_uuid()


# --- Context ---

class TestProjectContext:
    """Tests for ProjectContext."""

    def test_find_root_from_subdirectory(self, ctx):
        nested = ctx.root / "src" / "app"
        nested.mkdir(parents=True)
        assert find_project_root(nested) == ctx.root

    def test_no_project(self, project_dir):
        with pytest.raises(ProjectNotInitialized):
            find_project_root(project_dir)

    def test_load_and_unlock(self, ctx, project_key, settings):
        loaded = ProjectContext.load(ctx.root, settings=settings)
        assert loaded.project_uuid == ctx.project_uuid
        assert loaded.migration is None
        assert loaded.unlock() == project_key

    def test_device_found_by_public_key(self, ctx, project_key, settings):
        device_uuid = ctx.current_device_uuid()
        config = load_user_identity(settings)
        config.projects.clear()
        save_user_identity(config, settings)

        loaded = ProjectContext.load(ctx.root, settings=settings)
        assert loaded.current_device_uuid() == device_uuid
        assert load_user_identity(settings).projects[ctx.project_uuid].device_uuid == device_uuid

    def test_unregistered_machine(self, ctx, settings, tmp_path, monkeypatch):
        monkeypatch.setenv("NAVIGATOR_SECRETS_CONFIG_DIR", str(tmp_path / "other" / "config"))
        monkeypatch.setenv("NAVIGATOR_SECRETS_DATA_DIR", str(tmp_path / "other" / "data"))
        loaded = ProjectContext.load(ctx.root)
        with pytest.raises(DeviceNotFound):
            loaded.unlock()


# --- Secret files ---

class TestSecretFiles:
    """Tests for secret discovery and encrypt/decrypt."""

    def test_discovery(self, ctx, make_secret):
        make_secret(".env")
        make_secret("config/.env.production")
        make_secret("README.md", b"docs")
        make_secret(".git/.env", b"ignored")
        make_secret(".navigator-backup-20240101-000000/.env", b"ignored")
        found = [p.relative_to(ctx.root).as_posix() for p in find_secret_files(ctx.root)]
        assert found == [".env", "config/.env.production"]

    def test_secret_file_names(self):
        assert is_secret_file(".env.local")
        assert not is_secret_file(".env.enc")
        assert not is_secret_file(".env.enc.tmp-abc")
        assert not is_secret_file("settings.py")

    def test_encrypt_then_decrypt(self, ctx, project_key, make_secret):
        plain = make_secret("config/.env", b"TOKEN=abc\n")
        written = encrypt_secrets(ctx, project_key)
        assert written == [ctx.root / "config" / ".env.enc"]
        assert _mode(written[0]) == 0o600

        plain.unlink()
        restored = decrypt_secrets(ctx, project_key)
        assert restored == [plain]
        assert plain.read_bytes() == b"TOKEN=abc\n"
        assert _mode(plain) == 0o644

    def test_audit_relative_names(self, ctx, project_key, make_secret):
        make_secret("config/.env")
        encrypt_secrets(ctx, project_key)
        entry = read_entries(ctx.root)[-1]
        assert entry.operation == Operation.ENCRYPT
        assert entry.files == ["config/.env"]

    def test_tampered_file_writes_nothing(self, ctx, project_key, make_secret):
        first = make_secret(".env", b"A=1\n")
        second = make_secret("b/.env", b"B=2\n")
        encrypt_secrets(ctx, project_key)
        first.unlink()
        second.unlink()
        enc = ctx.root / "b" / ".env.enc"
        enc.write_bytes(enc.read_bytes()[:-1] + b"\x00")

        with pytest.raises(IntegrityCheckFailed):
            decrypt_secrets(ctx, project_key)
        assert not first.exists()
        assert not second.exists()


# --- Consistency ---

class TestConsistency:
    """Tests for check_consistency."""

    def test_consistent(self, ctx):
        assert check_consistency(ctx).ok

    def test_pending_device_is_consistent(self, ctx):
        device_uuid = ctx.current_device_uuid()
        ctx.keys.wrapped_key_path(device_uuid).unlink()
        report = check_consistency(ctx)
        assert report.ok
        assert report.pending_devices == [device_uuid]

    def test_missing_and_orphaned(self, ctx):
        device_uuid = ctx.current_device_uuid()
        ctx.keys.public_key_path(device_uuid).unlink()
        ctx.keys.write_wrapped_key(ORPHAN, b"stale")

        report = check_consistency(ctx)
        assert not report.ok
        assert report.missing_public_keys == [device_uuid]
        assert report.orphan_wrapped_keys == [ORPHAN]
        assert report.orphan_public_keys == []


class TestCleanOrphans:
    """Tests for clean_orphans."""

    @pytest.fixture
    def orphans(self, ctx, device_keys):
        return [
            ctx.keys.write_wrapped_key(ORPHAN, b"stale"),
            ctx.keys.write_public_key(ORPHAN, device_keys[2].public_key),
        ]

    def test_removes_only_orphans(self, ctx, orphans):
        device_uuid = ctx.current_device_uuid()
        result = clean_orphans(ctx)
        assert sorted(result.removed) == sorted(orphans)
        assert not any(p.exists() for p in orphans)
        assert ctx.keys.has_wrapped_key(device_uuid)
        assert ctx.keys.public_key_stems() == [device_uuid]
        assert check_consistency(ctx).ok

    def test_dry_run(self, ctx, orphans):
        result = clean_orphans(ctx, dry_run=True)
        assert sorted(result.orphans) == sorted(orphans)
        assert result.removed == []
        assert all(p.exists() for p in orphans)

    def test_audited(self, ctx, orphans):
        clean_orphans(ctx)
        entry = read_entries(ctx.root)[-1]
        assert entry.operation == Operation.CLEAN
        assert sorted(entry.files) == [
            f".navigator/public_keys/{ORPHAN}.pub",
            f".navigator/secrets/{ORPHAN}.key",
        ]

    def test_nothing_to_clean(self, ctx):
        result = clean_orphans(ctx)
        assert result.orphans == []
        assert read_entries(ctx.root)[-1].operation == Operation.INIT


# --- Status ---

class TestStatus:
    """Tests for the per-file encryption status."""

    def test_states(self, ctx, project_key, make_secret):
        current = make_secret("a/.env")
        stale = make_secret("b/.env")
        gone = make_secret("c/.env")
        encrypt_secrets(ctx, project_key)
        make_secret(".env")
        gone.unlink()
        for plain, offset in ((current, -100), (stale, 100)):
            enc = plain.with_name(plain.name + ".enc")
            base = enc.stat().st_mtime
            os.utime(plain, (base + offset, base + offset))

        report = status(ctx)
        assert report.project_name == "repo"
        assert [(f.path, f.status) for f in report.files] == [
            (".env", FileStatus.UNENCRYPTED),
            ("a/.env", FileStatus.CURRENT),
            ("b/.env", FileStatus.STALE),
            ("c/.env", FileStatus.ENCRYPTED_ONLY),
        ]
        assert report.summary[FileStatus.STALE] == 1
        assert report.files[3].plaintext_mtime is None

    def test_no_secret_files(self, ctx):
        report = status(ctx)
        assert report.files == []
        assert sum(report.summary.values()) == 0
