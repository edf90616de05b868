"""
Project Fingerprint Tracker

Content identity for a generated file set. Two sets with the same paths and
contents share a fingerprint no matter how they are ordered; any edit, even one
that keeps the file length, produces a new one.
"""

import hashlib
from typing import Iterable, Optional

from healloop.schemas.sandbox import ProjectFile
from healloop.modules.sandbox.runtime_profile import normalize_runtime_path


# Separators cannot appear in a normalized path, so "a"+"bc" never collides with "ab"+"c"
_FIELD_SEP = "\x00"
_RECORD_SEP = "\x1e"


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def compute_files_fingerprint(files: Iterable[ProjectFile]) -> str:
    """Return the sha256 fingerprint of a file set, or "" for an empty set"""
    records = sorted(
        (normalize_runtime_path(f.path), f.content) for f in files
    )
    if not records:
        return ""

    digest = hashlib.sha256()
    for path, content in records:
        digest.update(path.encode("utf-8"))
        digest.update(_FIELD_SEP.encode("utf-8"))
        digest.update(content.encode("utf-8"))
        digest.update(_RECORD_SEP.encode("utf-8"))
    return digest.hexdigest()


class FingerprintTracker:
    """
    Remembers what the sandbox last attempted to build and last synced.

    The build fingerprint guards full Sync/Install/Start cycles; the sync
    fingerprint guards hot syncs into an already running sandbox.
    """

    def __init__(self):
        self.last_build_fingerprint: Optional[str] = None
        self.last_synced_fingerprint: Optional[str] = None

    def needs_rebuild(self, fingerprint: str) -> bool:
        return fingerprint != self.last_build_fingerprint

    def needs_sync(self, fingerprint: str) -> bool:
        return fingerprint != self.last_synced_fingerprint

    def mark_build_attempt(self, fingerprint: str) -> None:
        self.last_build_fingerprint = fingerprint

    def mark_synced(self, fingerprint: str) -> None:
        self.last_synced_fingerprint = fingerprint

    def reset(self) -> None:
        self.last_build_fingerprint = None
        self.last_synced_fingerprint = None
