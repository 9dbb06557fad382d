"""Content-hash duplicate detection."""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass

from tidyup.models import CandidateEntry

log = logging.getLogger(__name__)

_CHUNK_SIZE = 65_536  # 64 KB
QUICK_CHUNK = 1024 * 1024
MIN_SIZE = 1024
QUICK_HASH_THRESHOLD = 10 * 1024 * 1024

KEEP_POLICIES = ("newest", "oldest")


@dataclass(frozen=True, slots=True)
class FileStat:
    path: str
    size: int
    mod_time: float


def sha256_file(path: str) -> str:
    """Compute SHA-256 of a file using chunked reads."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            h.update(chunk)
    return h.hexdigest()


def quick_hash(path: str, chunk_size: int = QUICK_CHUNK) -> str:
    """Hash only the first and last *chunk_size* bytes plus the file size.

    Files no larger than two chunks are hashed in full.
    """
    size = os.path.getsize(path)
    if size <= chunk_size * 2:
        return sha256_file(path)
    h = hashlib.sha256()
    with open(path, "rb") as f:
        h.update(f.read(chunk_size))
        f.seek(-chunk_size, os.SEEK_END)
        h.update(f.read(chunk_size))
    h.update(str(size).encode())
    return h.hexdigest()


def content_hash(path: str, size: int) -> str:
    if size > QUICK_HASH_THRESHOLD:
        return quick_hash(path)
    return sha256_file(path)


def find_duplicates(
    files: list[FileStat],
    keep: str = "newest",
    category: str = "duplicates",
) -> tuple[list[CandidateEntry], list[str]]:
    """Group *files* by content and flag every copy but one.

    Files under :data:`MIN_SIZE` are ignored.  Within a group the kept file
    is the most recently modified one (``keep="newest"``) or the oldest
    (``keep="oldest"``); equal modification times fall back to input
    order.  Returns the flagged candidates and any hashing errors.
    """
    if keep not in KEEP_POLICIES:
        raise ValueError(f"unknown keep policy: {keep!r}")

    # Only same-size files can be identical, so hash those alone.
    by_size: dict[int, list[FileStat]] = {}
    for f in files:
        if f.size < MIN_SIZE:
            continue
        by_size.setdefault(f.size, []).append(f)

    by_hash: dict[str, list[FileStat]] = {}
    errors: list[str] = []
    for size, group in by_size.items():
        if len(group) < 2:
            continue
        for f in group:
            try:
                digest = content_hash(f.path, size)
            except OSError as e:
                log.debug("Cannot hash %s: %s", f.path, e)
                errors.append(f"{f.path}: {e.strerror or e}")
                continue
            by_hash.setdefault(digest, []).append(f)

    entries: list[CandidateEntry] = []
    for digest, group in by_hash.items():
        if len(group) < 2:
            continue
        # sorted() is stable, so ties keep their input order.
        ordered = sorted(group, key=lambda f: f.mod_time, reverse=(keep == "newest"))
        kept = ordered[0]
        for dup in ordered[1:]:
            entries.append(
                CandidateEntry(
                    path=dup.path,
                    size=dup.size,
                    mod_time=dup.mod_time,
                    category=category,
                    reason=f"Duplicate of {kept.path}",
                    hash=digest,
                )
            )
    return entries, errors
