"""
Isolation Resolver - turns a project root into a namespace key.

Every backend handle is bound to exactly one key, so the key must be stable
across restarts and must not let one logical project split into two.
Normalization policy, applied before hashing:

- `~` is expanded
- symlinks are resolved (a symlinked checkout shares its target's namespace)
- case is folded where the platform's filesystem folds it (os.path.normcase)
- trailing separators are dropped

The key is the first 32 hex chars (128 bits) of a SHA-256 digest of the
normalized path.
"""

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from mnemo.errors import InvalidProjectRoot

KEY_LENGTH = 32

PathLike = Union[str, os.PathLike]


@dataclass(frozen=True)
class ProjectIdentity:
    root: Path
    namespace: str

    @property
    def normalized(self) -> str:
        return str(self.root)


def normalize_root(root_path: PathLike) -> Path:
    """Canonical form of a project root. Raises InvalidProjectRoot."""
    if root_path is None or str(root_path).strip() == "":
        raise InvalidProjectRoot(root_path, "root path is empty")

    try:
        resolved = Path(root_path).expanduser().resolve(strict=True)
    except FileNotFoundError:
        raise InvalidProjectRoot(root_path, "path does not exist") from None
    except (OSError, RuntimeError) as e:
        # RuntimeError covers symlink loops on older Pythons
        raise InvalidProjectRoot(root_path, f"path cannot be resolved ({e})") from e

    if not resolved.is_dir():
        raise InvalidProjectRoot(root_path, "path is not a directory")

    text = os.path.normcase(str(resolved))
    if len(text) > 1:
        text = text.rstrip(os.sep)
    return Path(text)


def namespace(root_path: PathLike) -> str:
    """Deterministic namespace key for a project root."""
    normalized = normalize_root(root_path)
    return _digest(str(normalized))


def _digest(normalized: str) -> str:
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:KEY_LENGTH]


def resolve_project(root_path: PathLike) -> ProjectIdentity:
    """Validate a project root and derive its namespace.

    Runs before any backend exists, so a bad root fails fast.
    """
    normalized = normalize_root(root_path)
    if not os.access(normalized, os.W_OK):
        raise InvalidProjectRoot(root_path, "path is not writable")
    return ProjectIdentity(root=normalized, namespace=_digest(str(normalized)))
