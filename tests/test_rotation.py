"""
Tests for project key rotation.

Tests cover:
- Manual sync: new key, re-encrypted files, re-wrapped device keys
- Advisory lock rejecting concurrent rotations
- All-or-nothing behaviour when rotation fails before commit
- Reporting of artifacts left behind when committing fails
- Rotation of a single device's own keypair
"""
import os

import pytest

from navigator_secrets.audit import Operation, read_entries
from navigator_secrets.exceptions import (
    DecryptionFailed,
    IntegrityCheckFailed,
    RotationAborted,
)
from navigator_secrets.project import encrypt_secrets
from navigator_secrets.utils import read_file
from navigator_secrets.vault import key_rotation
from navigator_secrets.vault.access import register_device
from navigator_secrets.vault.crypto import (
    decrypt_file,
    serialize_public_key,
    unwrap_symmetric_key,
)
from navigator_secrets.vault.key_rotation import (
    rotate_device_keypair,
    rotate_project_key,
    rotation_lock,
    sync_secrets,
)


@pytest.fixture
def team(ctx, project_key, device_keys, make_secret):
    """Two devices and two encrypted secret files."""
    register_device(ctx, "bob@example.com", "laptop", device_keys[1].public_key, project_key)
    make_secret(".env", b"A=1\n")
    make_secret("api/.env.local", b"B=2\n")
    encrypt_secrets(ctx, project_key)
    return ctx


def _snapshot(ctx):
    """Bytes of every file under the project directory."""
    return {
        p.relative_to(ctx.root).as_posix(): p.read_bytes()
        for p in ctx.root.rglob("*")
        if p.is_file() and p.name != "audit.jsonl"
    }


def _temporaries(ctx):
    return [p for p in ctx.root.rglob("*") if ".tmp-" in p.name]


# --- Sync ---

class TestSyncSecrets:
    """Tests for sync_secrets / rotate_project_key."""

    def test_new_key_everywhere(self, team, project_key, device_keys):
        result = sync_secrets(team, project_key)
        new_key = result.symmetric_key
        assert new_key != project_key
        assert result.secrets_reencrypted == 2
        assert result.devices_rewrapped == 2

        private = [device_keys[0].private_key, device_keys[1].private_key]
        for device, key in zip(team.config.devices, private):
            wrapped = team.keys.read_wrapped_key(device.device_uuid)
            assert unwrap_symmetric_key(wrapped, key) == new_key

        enc = team.root / ".env.enc"
        assert decrypt_file(read_file(enc), new_key) == b"A=1\n"
        with pytest.raises(IntegrityCheckFailed):
            decrypt_file(read_file(enc), project_key)

    def test_lock_released(self, team, project_key):
        sync_secrets(team, project_key)
        assert not team.paths.rotation_lock.exists()
        assert _temporaries(team) == []

    def test_audited(self, team, project_key):
        sync_secrets(team, project_key)
        entry = read_entries(team.root)[-1]
        assert entry.operation == Operation.SYNC
        assert entry.files == [".env.enc", "api/.env.local.enc"]

    def test_key_repr_hidden(self, team, project_key):
        result = rotate_project_key(team, project_key)
        assert "symmetric_key" not in repr(result)


# --- Lock ---

class TestRotationLock:
    """Tests for the advisory rotation lock."""

    def test_concurrent_rotation_rejected(self, team, project_key):
        before = _snapshot(team)
        with rotation_lock(team.paths):
            with pytest.raises(RotationAborted, match="in progress"):
                sync_secrets(team, project_key)
        assert _snapshot(team) == before
        assert team.unlock() == project_key

    def test_lock_removed_on_exit(self, team):
        with rotation_lock(team.paths) as lock:
            assert lock.exists()
        assert not lock.exists()


# --- Atomicity ---

class TestRotationAtomicity:
    """Failures before commit leave the project exactly as it was."""

    def test_failure_while_wrapping(self, team, project_key, monkeypatch):
        before = _snapshot(team)
        real_wrap = key_rotation.wrap_symmetric_key
        calls = []

        def flaky_wrap(key, public_key):
            calls.append(1)
            if len(calls) == 2:
                raise OSError("disk full")
            return real_wrap(key, public_key)

        monkeypatch.setattr(key_rotation, "wrap_symmetric_key", flaky_wrap)
        with pytest.raises(RotationAborted) as exc:
            sync_secrets(team, project_key)
        assert isinstance(exc.value.__cause__, OSError)
        assert _snapshot(team) == before
        assert _temporaries(team) == []
        assert not team.paths.rotation_lock.exists()
        assert team.unlock() == project_key

    def test_failure_saving_config_keeps_revoked_files(self, team, project_key, monkeypatch):
        bob = team.config.devices_for("bob@example.com")[0]
        before = _snapshot(team)

        def failing_save(config, path):
            raise OSError("read-only filesystem")

        monkeypatch.setattr(key_rotation, "save_project_identity", failing_save)
        with pytest.raises(RotationAborted):
            rotate_project_key(team, project_key, exclude=[bob.device_uuid])
        assert _snapshot(team) == before
        assert team.config.get_device(bob.device_uuid) is not None
        assert team.keys.has_wrapped_key(bob.device_uuid)

    def test_failure_while_committing(self, team, project_key, monkeypatch):
        real_replace = os.replace

        def flaky_replace(src, dst):
            if str(dst).endswith(".key"):
                raise OSError("device busy")
            return real_replace(src, dst)

        monkeypatch.setattr(key_rotation.os, "replace", flaky_replace)
        with pytest.raises(RotationAborted) as exc:
            sync_secrets(team, project_key)
        assert isinstance(exc.value.__cause__, OSError)
        assert sorted(p.name for p in exc.value.unmoved) == sorted(
            f"{d.device_uuid}.key" for d in team.config.devices
        )
        assert _temporaries(team) == []
        assert not team.paths.rotation_lock.exists()
        # wrapped keys were not replaced, so the old key still unwraps
        assert team.unlock() == project_key

    def test_tampered_secret_aborts(self, team, project_key):
        enc = team.root / ".env.enc"
        blob = bytearray(enc.read_bytes())
        blob[-1] ^= 0xFF
        enc.write_bytes(bytes(blob))
        with pytest.raises(RotationAborted) as exc:
            sync_secrets(team, project_key)
        assert isinstance(exc.value.__cause__, IntegrityCheckFailed)
        assert team.unlock() == project_key


# --- Device keypair ---

class TestRotateDeviceKeypair:
    """Tests for rotate_device_keypair."""

    def test_new_keypair_same_project_key(self, ctx, project_key, device_keys):
        device_uuid = rotate_device_keypair(ctx)
        new_private = ctx.local_keys.load_private_key(ctx.project_uuid)
        assert new_private.public_key().public_numbers() != device_keys[0].public_key.public_numbers()

        wrapped = ctx.keys.read_wrapped_key(device_uuid)
        assert unwrap_symmetric_key(wrapped, new_private) == project_key
        with pytest.raises(DecryptionFailed):
            unwrap_symmetric_key(wrapped, device_keys[0].private_key)
        assert read_file(ctx.keys.public_key_path(device_uuid)) == serialize_public_key(
            new_private.public_key()
        )
        assert ctx.unlock() == project_key

    def test_audited(self, ctx):
        device_uuid = rotate_device_keypair(ctx)
        entry = read_entries(ctx.root)[-1]
        assert entry.operation == Operation.ROTATE
        assert entry.device == device_uuid
