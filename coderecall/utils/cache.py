"""Storage location utilities for coderecall.

Provides functions to compute the per-repository storage directory for
embedding indexes. Locations are derived deterministically from the
repository identifier so every process resolves the same index file.

This module is intentionally kept dependency-free from the rest of the
package to avoid circular imports.
"""

import hashlib
import os
from pathlib import Path

INDEX_FILENAME = "index.json"


def get_home_dir() -> Path:
    """Get the coderecall home directory.

    Read from CODERECALL_HOME at call time, defaulting to ~/.coderecall.

    Returns:
        Path to the home directory (not created).
    """
    home = os.getenv("CODERECALL_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / ".coderecall"


def get_repo_hash(repo_id: str) -> str:
    """Get the hash identifier for a repository id.

    Args:
        repo_id: Repository identifier (a name, URL or path).

    Returns:
        A 16-character hex hash of the identifier.
    """
    return hashlib.sha256(repo_id.encode("utf-8")).hexdigest()[:16]


def get_store_dir(repo_id: str, base_path: Path | str | None = None) -> Path:
    """Compute the embeddings directory for a repository.

    When base_path is provided, embeddings live directly under it.
    Otherwise they live in a hashed subdirectory of the home directory.

    Args:
        repo_id: Repository identifier.
        base_path: Explicit storage root override, or None.

    Returns:
        Path to the embeddings directory.

    Examples:
        >>> get_store_dir("my-repo", "/tmp/store")
        PosixPath('/tmp/store/embeddings')

        >>> get_store_dir("my-repo")  # doctest: +SKIP
        PosixPath('/home/user/.coderecall/cache/1b0e4f3c2a9d8e7f/embeddings')
    """
    if base_path is not None:
        return Path(base_path) / "embeddings"

    return get_home_dir() / "cache" / get_repo_hash(repo_id) / "embeddings"


def get_index_path(repo_id: str, base_path: Path | str | None = None) -> Path:
    """Get the path to the persisted index file.

    Args:
        repo_id: Repository identifier.
        base_path: Explicit storage root override, or None.

    Returns:
        Path to the index.json file.
    """
    return get_store_dir(repo_id, base_path) / INDEX_FILENAME
