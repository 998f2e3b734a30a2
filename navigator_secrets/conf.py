"""
Navigator Secrets Configuration — Paths, names and validated settings.

Per-user locations are resolved from the environment:
    NAVIGATOR_SECRETS_CONFIG_DIR = <directory holding the user config>
    NAVIGATOR_SECRETS_DATA_DIR = <directory holding machine-local keys>
    NAVIGATOR_SECRETS_RSA_KEY_SIZE = <bits, minimum 2048>

When unset, XDG_CONFIG_HOME / XDG_DATA_HOME (or ~/.config, ~/.local/share)
are used with a ``navigator`` subdirectory.

Project-relative names are fixed; every project keeps its shared state in
a ``.navigator`` directory at the project root.
"""
import os
import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("navigator.secrets")

# Shared project directory layout
PROJECT_DIR = ".navigator"
PROJECT_CONFIG = "config.json"
PUBLIC_KEYS_DIR = "public_keys"
WRAPPED_KEYS_DIR = "secrets"
AUDIT_LOG = "audit.jsonl"
ROTATION_LOCK = "rotation.lock"
BACKUP_PREFIX = ".navigator-backup-"

PUBLIC_KEY_EXT = ".pub"
WRAPPED_KEY_EXT = ".key"
ENCRYPTED_EXT = ".enc"

# Machine-local layout
USER_CONFIG = "config.json"
KEYS_DIR = "keys"
PRIVATE_KEY_NAME = "privkey"
PUBLIC_KEY_NAME = "pubkey.pub"

APP_NAME = "navigator"
MIN_RSA_KEY_SIZE = 2048

# Permission bits
OWNER_RW = 0o600
OWNER_RWX = 0o700
SHARED_READ = 0o644


def _xdg_dir(env_name: str, *fallback: str) -> Path:
    base = os.environ.get(env_name)
    if base:
        return Path(base) / APP_NAME
    return Path.home().joinpath(*fallback) / APP_NAME


class ProjectPaths:
    """Locations inside one project's shared ``.navigator`` directory."""

    def __init__(self, root: os.PathLike):
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"<ProjectPaths root={self.root}>"

    @property
    def base(self) -> Path:
        return self.root / PROJECT_DIR

    @property
    def config(self) -> Path:
        return self.base / PROJECT_CONFIG

    @property
    def public_keys(self) -> Path:
        return self.base / PUBLIC_KEYS_DIR

    @property
    def wrapped_keys(self) -> Path:
        return self.base / WRAPPED_KEYS_DIR

    @property
    def audit_log(self) -> Path:
        return self.base / AUDIT_LOG

    @property
    def rotation_lock(self) -> Path:
        return self.base / ROTATION_LOCK


class Settings(BaseModel):
    """Validated per-user settings."""

    config_dir: Path
    data_dir: Path
    rsa_key_size: int = Field(default=MIN_RSA_KEY_SIZE)

    @field_validator("rsa_key_size")
    @classmethod
    def validate_key_size(cls, v: int) -> int:
        """Reject RSA sizes weaker than 2048 bits."""
        if v < MIN_RSA_KEY_SIZE:
            raise ValueError(
                f"rsa_key_size must be at least {MIN_RSA_KEY_SIZE}, got {v}"
            )
        return v

    @property
    def user_config_path(self) -> Path:
        return self.config_dir / USER_CONFIG

    @property
    def keys_dir(self) -> Path:
        return self.data_dir / KEYS_DIR

    @classmethod
    def from_env(cls) -> "Settings":
        """Create Settings by loading values from environment.

        Returns:
            Populated Settings instance.
        """
        config_dir = os.environ.get("NAVIGATOR_SECRETS_CONFIG_DIR")
        data_dir = os.environ.get("NAVIGATOR_SECRETS_DATA_DIR")
        key_size = os.environ.get("NAVIGATOR_SECRETS_RSA_KEY_SIZE")
        settings = cls(
            config_dir=Path(config_dir) if config_dir else _xdg_dir(
                "XDG_CONFIG_HOME", ".config"
            ),
            data_dir=Path(data_dir) if data_dir else _xdg_dir(
                "XDG_DATA_HOME", ".local", "share"
            ),
            rsa_key_size=int(key_size) if key_size else MIN_RSA_KEY_SIZE,
        )
        logger.debug(
            "Settings loaded: config_dir=%s data_dir=%s",
            settings.config_dir, settings.data_dir,
        )
        return settings
