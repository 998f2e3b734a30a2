"""
Shared fixtures for navigator_secrets tests.

RSA keypairs are generated once per session; every test gets isolated
per-user config/data directories and a fresh project directory.
"""
import pytest

from navigator_secrets import project as project_module
from navigator_secrets.conf import Settings
from navigator_secrets.project import init_project
from navigator_secrets.vault.crypto import generate_device_keypair


@pytest.fixture(scope="session")
def device_keys():
    """Three RSA-2048 keypairs reused across the session."""
    return [generate_device_keypair() for _ in range(3)]


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point every per-user location at the test's temporary directory."""
    monkeypatch.setenv("NAVIGATOR_SECRETS_CONFIG_DIR", str(tmp_path / "home" / "config"))
    monkeypatch.setenv("NAVIGATOR_SECRETS_DATA_DIR", str(tmp_path / "home" / "data"))
    monkeypatch.delenv("NAVIGATOR_SECRETS_RSA_KEY_SIZE", raising=False)


@pytest.fixture
def settings(isolated_env):
    return Settings.from_env()


@pytest.fixture
def project_dir(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def ctx(project_dir, settings, device_keys, monkeypatch):
    """Project initialized by alice on her 'macbook' (device_keys[0])."""
    monkeypatch.setattr(
        project_module, "generate_device_keypair", lambda *a, **kw: device_keys[0],
    )
    return init_project(project_dir, "alice@example.com", "macbook", settings=settings)


@pytest.fixture
def project_key(ctx):
    return ctx.unlock()


@pytest.fixture
def make_secret(project_dir):
    """Factory creating plaintext secret files inside the project."""
    def _make(relative: str, content: bytes = b"API_KEY=secret\n"):
        path = project_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path
    return _make
