"""Content fingerprint used to detect "no change since the last snapshot"."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class AssetEntry:
    """One auxiliary asset (media file) that travels with the collection."""

    name: str
    size: int


def hash_bytes(content: bytes) -> str:
    """Compute SHA-256 hash of raw bytes."""
    return hashlib.sha256(content).hexdigest()


def hash_file(file_path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    sha = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            sha.update(chunk)
    return sha.hexdigest()


def canonical_manifest(manifest: Sequence[AssetEntry]) -> list[AssetEntry]:
    """Return the manifest in its canonical (name, size) order."""
    return sorted(manifest, key=lambda entry: (entry.name, entry.size))


def compute_fingerprint(
    collection: bytes | Path,
    manifest: Sequence[AssetEntry] | None = None,
) -> str:
    """Compute the fingerprint of a collection and its optional asset manifest.

    Policy: the manifest is canonicalized (sorted by name, then size) before
    hashing, so two manifests with the same entries in a different order hash
    the same. Without a manifest the result is the plain SHA-256 of the
    collection bytes.

    With a manifest, the collection digest and every entry are length-framed
    into an outer SHA-256 so that no byte sequence of one part can be mistaken
    for another.
    """
    collection_digest = (
        hash_bytes(collection) if isinstance(collection, bytes) else hash_file(collection)
    )
    if not manifest:
        return collection_digest

    outer = hashlib.sha256()
    _frame(outer, b"collection")
    _frame(outer, collection_digest.encode("ascii"))
    for entry in canonical_manifest(manifest):
        _frame(outer, b"asset")
        _frame(outer, entry.name.encode("utf-8"))
        _frame(outer, str(entry.size).encode("ascii"))
    return outer.hexdigest()


def _frame(sha: hashlib._Hash, part: bytes) -> None:
    sha.update(len(part).to_bytes(8, "big"))
    sha.update(part)
