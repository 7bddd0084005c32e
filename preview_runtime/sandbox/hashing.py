"""
Deterministic hashing for workspaces and finished sessions.

Neither hash depends on timestamps, traversal order, permissions, session
ids, ports or URLs.
"""

import hashlib
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping

from preview_runtime.errors import WorkspaceNotFound

# Build caches and VCS metadata never contribute to the workspace hash
IGNORED_DIR_NAMES = {"node_modules", ".next", ".git"}

# Exactly the fields that contribute to the session hash
SESSION_HASH_FIELDS = (
    "request_id",
    "framework",
    "framework_version",
    "manifest_hash",
    "workspace_hash",
    "status",
    "failure_stage",
    "failure_output",
)

_CHUNK_SIZE = 64 * 1024


def _list_files(root: Path) -> List[str]:
    """Relative POSIX paths of every regular file under root, sorted."""
    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in IGNORED_DIR_NAMES]
        for name in filenames:
            full = Path(dirpath) / name
            if full.is_file():
                found.append(full.relative_to(root).as_posix())
    found.sort()
    return found


def directory_hash(path) -> str:
    """
    Compute the SHA-256 of a directory's relative paths and file contents.

    Files are visited in lexicographic order of their relative path. For each
    one the digest is fed the path, a NUL, the byte length in decimal, a NUL,
    then the bytes. The separators keep {a: "bc"} and {ab: "c"} apart.

    Args:
        path: Directory to hash

    Returns:
        Hex digest

    Raises:
        WorkspaceNotFound: If path is not a directory
    """
    root = Path(path)
    if not root.is_dir():
        raise WorkspaceNotFound(str(path))

    digest = hashlib.sha256()

    for relative in _list_files(root):
        digest.update(relative.encode("utf-8") + b"\0")
        with open(root / relative, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            digest.update(str(size).encode("ascii") + b"\0")
            for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                digest.update(chunk)

    return digest.hexdigest()


def _plain(value: Any) -> Any:
    # Enums serialize by value
    return getattr(value, "value", value)


def session_hash(fields: Mapping[str, Any]) -> str:
    """
    Compute the deterministic hash of a finished session.

    Only SESSION_HASH_FIELDS are read; anything else in ``fields`` (session id,
    port, preview URL, timestamps) is ignored.

    Args:
        fields: Mapping holding at least the hashed fields

    Returns:
        Hex digest
    """
    canonical: Dict[str, Any] = {name: _plain(fields.get(name)) for name in SESSION_HASH_FIELDS}
    serialized = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
