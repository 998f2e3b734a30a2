"""Identity & Config Model — users, projects and devices."""

from .models import (
    UserIdentity,
    UserProjectEntry,
    UserConfig,
    ProjectIdentity,
    DeviceRecord,
    ProjectConfig,
)
from .config import (
    load_user_identity,
    save_user_identity,
    update_user_email,
    load_project_identity,
    save_project_identity,
    validate_project_config,
    project_config_path,
)

__all__ = [
    "UserIdentity",
    "UserProjectEntry",
    "UserConfig",
    "ProjectIdentity",
    "DeviceRecord",
    "ProjectConfig",
    "load_user_identity",
    "save_user_identity",
    "update_user_email",
    "load_project_identity",
    "save_project_identity",
    "validate_project_config",
    "project_config_path",
]
