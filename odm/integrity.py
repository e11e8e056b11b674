"""File integrity helpers."""

from __future__ import annotations

import asyncio
import hashlib
import os

_BUFFER_SIZE = 8 * 1024


def _hash_file(path: str | os.PathLike[str]) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as handle:
        for block in iter(lambda: handle.read(_BUFFER_SIZE), b""):
            hasher.update(block)
    return hasher.hexdigest()


async def sha256_sum(path: str | os.PathLike[str]) -> str:
    """Compute the lowercase hex SHA-256 digest of a file without blocking the loop."""
    return await asyncio.to_thread(_hash_file, path)