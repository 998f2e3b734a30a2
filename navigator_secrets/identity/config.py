"""
Identity Config — Load, save and validate user and project configs.

The user config lives in the per-user config directory; the project config
lives in the shared ``.navigator`` directory. Both are JSON documents
serialized with orjson and validated with pydantic. A malformed file is
reported as ``ConfigCorrupt`` naming the offending field; it is never
replaced by defaults.
"""
import os
import secrets
import logging
from pathlib import Path
from typing import Optional, Union

import orjson
from pydantic import BaseModel, ValidationError

from ..conf import PROJECT_CONFIG, PROJECT_DIR, OWNER_RW, SHARED_READ, Settings
from ..exceptions import ConfigCorrupt, ProjectNotInitialized
from ..utils import atomic_write, new_uuid, temp_path, write_file
from .models import ProjectConfig, UserConfig, UserIdentity

logger = logging.getLogger("navigator.secrets")


def project_config_path(project_path: Union[str, Path]) -> Path:
    return Path(project_path) / PROJECT_DIR / PROJECT_CONFIG


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _dump(model: BaseModel) -> bytes:
    data = model.model_dump(mode="json", by_alias=True, exclude_none=True)
    return orjson.dumps(data, option=orjson.OPT_INDENT_2) + b"\n"


def _load(path: Path, model_cls: type) -> BaseModel:
    """Parse ``path`` into ``model_cls``, mapping every failure to ConfigCorrupt."""
    try:
        raw = path.read_bytes()
    except OSError as err:
        raise ConfigCorrupt(path, "<file>", f"cannot read: {err}") from err
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as err:
        raise ConfigCorrupt(path, "<document>", f"not valid JSON: {err}") from err
    if not isinstance(data, dict):
        raise ConfigCorrupt(path, "<document>", "top level must be an object")
    try:
        return model_cls.model_validate(data)
    except ValidationError as err:
        first = err.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "<document>"
        raise ConfigCorrupt(path, field, first["msg"]) from err


# ---------------------------------------------------------------------------
# User identity
# ---------------------------------------------------------------------------

def load_user_identity(settings: Optional[Settings] = None) -> UserConfig:
    """Load the per-machine user config, creating it on first use.

    On first use a fresh user UUID is generated and written with an
    exclusive link, so two processes racing through first run end up
    sharing whichever identity landed first.

    Args:
        settings: Per-user settings; resolved from environment when omitted.

    Returns:
        The user config.

    Raises:
        ConfigCorrupt: If the existing config cannot be parsed.
    """
    settings = settings or Settings.from_env()
    path = settings.user_config_path
    if path.exists():
        return _load(path, UserConfig)

    config = UserConfig(user=UserIdentity(email="", uuid=new_uuid()))
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = temp_path(path, secrets.token_hex(4))
    write_file(tmp, _dump(config), OWNER_RW)
    try:
        os.link(tmp, path)
    except FileExistsError:
        logger.info("User config appeared concurrently at %s, reusing it", path)
        return _load(path, UserConfig)
    finally:
        tmp.unlink(missing_ok=True)
    logger.info("Generated user identity %s", config.user.uuid)
    return config


def save_user_identity(config: UserConfig, settings: Optional[Settings] = None) -> None:
    settings = settings or Settings.from_env()
    atomic_write(settings.user_config_path, _dump(config), OWNER_RW)


def update_user_email(email: str, settings: Optional[Settings] = None) -> UserConfig:
    """Change the stored email; the user UUID is left untouched."""
    settings = settings or Settings.from_env()
    config = load_user_identity(settings)
    config.user.email = email
    save_user_identity(config, settings)
    return config


# ---------------------------------------------------------------------------
# Project identity
# ---------------------------------------------------------------------------

def validate_project_config(config: ProjectConfig, path: Optional[Path] = None) -> None:
    """Check the cross-record invariants pydantic cannot see per field.

    Raises:
        ConfigCorrupt: On duplicate device UUIDs, duplicate (email, name)
            pairs, or ``users`` entries that reference unknown devices or
            emails.
    """
    seen: set[str] = set()
    names: set[tuple[str, str]] = set()
    for idx, device in enumerate(config.devices):
        if device.device_uuid in seen:
            raise ConfigCorrupt(
                path, f"devices.{idx}.device_uuid",
                f"duplicate device UUID {device.device_uuid}",
            )
        seen.add(device.device_uuid)
        pair = (device.owner_email, device.device_name)
        if pair in names:
            raise ConfigCorrupt(
                path, f"devices.{idx}.name",
                f"device name '{device.device_name}' used twice by {device.owner_email}",
            )
        names.add(pair)
        if device.device_uuid in config.revoked:
            raise ConfigCorrupt(
                path, f"devices.{idx}.device_uuid",
                f"device {device.device_uuid} is listed as revoked",
            )

    emails = set(config.emails())
    for device_uuid, email in config.users.items():
        if email not in emails:
            raise ConfigCorrupt(
                path, f"users.{device_uuid}",
                f"email {email} does not own any device",
            )
        if device_uuid not in seen:
            raise ConfigCorrupt(
                path, f"users.{device_uuid}",
                "references an unregistered device",
            )


def load_project_identity(project_path: Union[str, Path]) -> ProjectConfig:
    """Load and validate the project config.

    Raises:
        ProjectNotInitialized: If no config exists at ``project_path``.
        ConfigCorrupt: If the config is malformed.
    """
    path = project_config_path(project_path)
    if not path.exists():
        raise ProjectNotInitialized(f"No project config at {path}")
    config = _load(path, ProjectConfig)
    validate_project_config(config, path)
    config.project.path = Path(project_path)
    return config


def save_project_identity(config: ProjectConfig, project_path: Union[str, Path]) -> None:
    """Validate and atomically persist the project config."""
    path = project_config_path(project_path)
    validate_project_config(config, path)
    atomic_write(path, _dump(config), SHARED_READ)
    logger.debug("Saved project config %s (%d devices)", path, len(config.devices))
