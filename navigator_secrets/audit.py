"""
Navigator Secrets Audit Log — Append-only JSON Lines record of operations.

Each significant operation appends one line to ``.navigator/audit.jsonl``:

    {"ts": "...", "user": "...", "user_uuid": "...", "op": "revoke",
     "target_user": "...", "device": "..."}

Optional fields that are absent are omitted, never written as null.

Security Note:
    Never put key material or secret file contents in an entry.
    Write failures are logged and swallowed; an operation never fails
    because its audit entry could not be written.
"""
import os
import logging
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .conf import SHARED_READ, ProjectPaths
from .identity.models import UserIdentity
from .utils import now_ts

logger = logging.getLogger("navigator.secrets")


class Operation(str, Enum):
    """Operations this package writes; other tools may log further ones."""

    INIT = "init"
    CREATE = "create"
    REGISTER = "register"
    REVOKE = "revoke"
    ROTATE = "rotate"
    SYNC = "sync"
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    MIGRATE = "migrate"
    RENAME = "rename"
    CLEAN = "clean"


def _op_value(operation: Union[Operation, str]) -> str:
    return operation.value if isinstance(operation, Operation) else str(operation)


class AuditEntry(BaseModel):
    """One audit log line. ``operation`` is kept as the raw ``op`` string."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: str = Field(default="", alias="ts")
    user_email: str = Field(default="", alias="user")
    user_uuid: Optional[str] = None
    operation: str = Field(alias="op", min_length=1)
    files: Optional[list[str]] = None
    target_user: Optional[str] = None
    device: Optional[str] = None

    @field_validator("operation", mode="before")
    @classmethod
    def validate_operation(cls, v):
        return v.value if isinstance(v, Operation) else v

    def to_json(self) -> bytes:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        for key in ("user_uuid", "files", "target_user", "device"):
            if key in data and not data[key]:
                del data[key]
        return orjson.dumps(data)

    @property
    def when(self) -> Optional[datetime]:
        """Parsed timestamp, or None when it cannot be parsed."""
        try:
            return datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except ValueError:
            return None


def entry_for(
    operation: Union[Operation, str], user: Optional[UserIdentity] = None, **fields,
) -> AuditEntry:
    """Build an entry with the acting user's email and UUID filled in."""
    if user is not None:
        fields.setdefault("user_email", user.email)
        fields.setdefault("user_uuid", user.uuid)
    return AuditEntry(operation=operation, **fields)


def log(entry: AuditEntry, project_path: Optional[Union[str, Path]]) -> None:
    """Append ``entry`` to the project's audit log, best effort.

    The timestamp is filled in when the caller did not supply one.
    """
    if not project_path:
        logger.debug("No project path configured, skipping audit entry op=%s", entry.operation)
        return
    try:
        if not entry.timestamp:
            entry = entry.model_copy(update={"timestamp": now_ts()})
        path = ProjectPaths(project_path).audit_log
        fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, SHARED_READ)
        with os.fdopen(fd, "ab") as f:
            f.write(entry.to_json() + b"\n")
    except Exception as err:  # audit must not break callers
        logger.warning(
            "Failed to write audit entry op=%s: %s", entry.operation, err,
        )


def parse_entries(raw: bytes) -> list[AuditEntry]:
    """Parse JSON Lines data; malformed lines are skipped."""
    entries: list[AuditEntry] = []
    for line in raw.splitlines():
        if not line.strip():
            continue
        try:
            entries.append(AuditEntry.model_validate(orjson.loads(line)))
        except (orjson.JSONDecodeError, ValidationError):
            continue
    return entries


def read_entries(project_path: Union[str, Path]) -> list[AuditEntry]:
    """Read every entry of a project's audit log; a missing log is empty."""
    path = ProjectPaths(project_path).audit_log
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return []
    return parse_entries(raw)


def _as_datetime(value: Union[date, datetime, str], end_of_day: bool = False) -> datetime:
    if isinstance(value, str):
        value = date.fromisoformat(value)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    moment = datetime.combine(value, time.min, tzinfo=timezone.utc)
    if end_of_day:
        moment += timedelta(days=1) - timedelta(microseconds=1)
    return moment


def filter_entries(
    entries: Iterable[AuditEntry],
    user: Optional[str] = None,
    operations: Optional[Iterable[Union[Operation, str]]] = None,
    since: Optional[Union[date, datetime, str]] = None,
    until: Optional[Union[date, datetime, str]] = None,
    limit: int = 0,
    reverse: bool = False,
) -> list[AuditEntry]:
    """Filter audit entries the way ``log`` views need them.

    Args:
        entries: Entries in log order.
        user: Keep only entries by this email.
        operations: Keep only these operations.
        since: Keep entries at or after this date (``YYYY-MM-DD`` accepted).
        until: Keep entries up to the end of this date.
        limit: Maximum entries returned; 0 means no limit. Applied after
            ordering, so with ``reverse`` it keeps the most recent ones.
        reverse: Most recent first.

    Raises:
        ValueError: If ``since``/``until`` strings are not ``YYYY-MM-DD``.
    """
    result = list(entries)
    if user:
        result = [e for e in result if e.user_email == user]
    if operations:
        wanted = {_op_value(op) for op in operations}
        result = [e for e in result if e.operation in wanted]
    if since is not None:
        start = _as_datetime(since)
        result = [e for e in result if e.when is not None and e.when >= start]
    if until is not None:
        end = _as_datetime(until, end_of_day=True)
        result = [e for e in result if e.when is not None and e.when <= end]
    if reverse:
        result.reverse()
    if limit > 0:
        result = result[:limit]
    return result
