"""
Identity Models — Users, projects and devices, and their persisted form.

Devices, not users, are the keyed entity of a project: each device has its
own UUID and keypair, and ``email`` only groups devices by owner.
"""
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils import is_uuid, utcnow


def _check_uuid(v: str) -> str:
    if not is_uuid(v):
        raise ValueError(f"not a valid UUID: {v!r}")
    return v.lower()


class UserIdentity(BaseModel):
    """Per-machine user identity. ``uuid`` never changes once generated."""

    model_config = ConfigDict(populate_by_name=True)

    email: str = ""
    uuid: str = Field(alias="user_uuid")

    @field_validator("uuid")
    @classmethod
    def validate_uuid(cls, v: str) -> str:
        return _check_uuid(v)


class UserProjectEntry(BaseModel):
    """Which device this machine uses for a joined project."""

    device_uuid: Optional[str] = None
    device_name: str = ""
    project_name: str = ""


class UserConfig(BaseModel):
    user: UserIdentity
    projects: dict[str, UserProjectEntry] = Field(default_factory=dict)

    def set_project(
        self,
        project_uuid: str,
        device_uuid: Optional[str],
        device_name: str,
        project_name: str,
    ) -> None:
        self.projects[project_uuid] = UserProjectEntry(
            device_uuid=device_uuid,
            device_name=device_name,
            project_name=project_name,
        )


class ProjectIdentity(BaseModel):
    """Project identity; ``path`` is where it was loaded from, never persisted."""

    model_config = ConfigDict(populate_by_name=True)

    uuid: str = Field(alias="project_uuid")
    name: str
    path: Optional[Path] = Field(default=None, exclude=True)

    @field_validator("uuid")
    @classmethod
    def validate_uuid(cls, v: str) -> str:
        return _check_uuid(v)


class DeviceRecord(BaseModel):
    """One registered device of a project."""

    model_config = ConfigDict(populate_by_name=True)

    device_uuid: str
    owner_email: str = Field(alias="email", min_length=1)
    device_name: str = Field(alias="name", min_length=1)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("device_uuid")
    @classmethod
    def validate_uuid(cls, v: str) -> str:
        return _check_uuid(v)


class ProjectConfig(BaseModel):
    """Project-level identity config shared by every team member."""

    project: ProjectIdentity
    devices: list[DeviceRecord] = Field(default_factory=list)
    # device_uuid -> owner email
    users: dict[str, str] = Field(default_factory=dict)
    revoked: list[str] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_device(self, device_uuid: str) -> Optional[DeviceRecord]:
        for device in self.devices:
            if device.device_uuid == device_uuid:
                return device
        return None

    def devices_for(self, email: str) -> list[DeviceRecord]:
        return [d for d in self.devices if d.owner_email == email]

    def find_device(self, email: str, device_name: str) -> Optional[DeviceRecord]:
        for device in self.devices_for(email):
            if device.device_name == device_name:
                return device
        return None

    def emails(self) -> list[str]:
        seen: dict[str, None] = {}
        for device in self.devices:
            seen.setdefault(device.owner_email, None)
        return list(seen)

    def is_known_uuid(self, device_uuid: str) -> bool:
        return self.get_device(device_uuid) is not None or device_uuid in self.revoked

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_device(self, record: DeviceRecord) -> None:
        self.devices.append(record)
        self.users[record.device_uuid] = record.owner_email

    def remove_device(self, device_uuid: str) -> Optional[DeviceRecord]:
        """Drop a device and remember its UUID as revoked."""
        record = self.get_device(device_uuid)
        self.devices = [d for d in self.devices if d.device_uuid != device_uuid]
        self.users.pop(device_uuid, None)
        if device_uuid not in self.revoked:
            self.revoked.append(device_uuid)
        return record
