"""
Secret file discovery.

Secret files are any files whose name contains ``.env``; their encrypted
counterparts carry an extra ``.enc`` suffix and live next to them.
"""
import os
from pathlib import Path
from typing import Iterable, Optional, Union

from .conf import BACKUP_PREFIX, ENCRYPTED_EXT, PROJECT_DIR

_SKIP_DIRS = frozenset({PROJECT_DIR, ".git", ".hg", ".svn", "node_modules", "__pycache__"})


def is_secret_file(path: Union[str, Path]) -> bool:
    name = Path(path).name
    return ".env" in name and not name.endswith(ENCRYPTED_EXT) and ".tmp-" not in name


def is_encrypted_file(path: Union[str, Path]) -> bool:
    name = Path(path).name
    return ".env" in name and name.endswith(ENCRYPTED_EXT)


def encrypted_path_for(path: Union[str, Path]) -> Path:
    path = Path(path)
    return path.with_name(path.name + ENCRYPTED_EXT)


def plain_path_for(path: Union[str, Path]) -> Path:
    path = Path(path)
    return path.with_name(path.name[:-len(ENCRYPTED_EXT)])


def find_secret_files(
    root: Union[str, Path],
    encrypted: bool = False,
    ignore_dirs: Optional[Iterable[str]] = None,
) -> list[Path]:
    """Walk ``root`` for plaintext (or encrypted) secret files.

    The shared ``.navigator`` directory, migration backups and VCS
    directories are never entered.
    """
    skip = _SKIP_DIRS | set(ignore_dirs or ())
    match = is_encrypted_file if encrypted else is_secret_file
    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in skip and not d.startswith(BACKUP_PREFIX)
        )
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.is_file() and not path.is_symlink() and match(path):
                found.append(path)
    return found


def relative_names(root: Union[str, Path], paths: Iterable[Path]) -> list[str]:
    root = Path(root)
    names = []
    for path in paths:
        try:
            names.append(path.relative_to(root).as_posix())
        except ValueError:
            names.append(str(path))
    return names
