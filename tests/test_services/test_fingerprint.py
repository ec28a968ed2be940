"""Tests for the content fingerprint."""

from __future__ import annotations

import hashlib
import string
from typing import TYPE_CHECKING

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from ankibackup.services.fingerprint import (
    AssetEntry,
    canonical_manifest,
    compute_fingerprint,
    hash_bytes,
    hash_file,
)

if TYPE_CHECKING:
    from pathlib import Path

PROPERTY_SETTINGS = settings(
    max_examples=200,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_NAME = st.text(alphabet=string.ascii_lowercase + string.digits + "._-", min_size=1, max_size=12)
_ENTRY = st.builds(AssetEntry, name=_NAME, size=st.integers(min_value=0, max_value=10**9))
_MANIFEST = st.lists(_ENTRY, max_size=8)


class TestHashing:
    def test_hash_bytes_is_sha256(self) -> None:
        assert hash_bytes(b"abc") == hashlib.sha256(b"abc").hexdigest()

    def test_hash_file_matches_hash_bytes(self, tmp_path: Path) -> None:
        data = b"x" * (200 * 1024 + 7)
        path = tmp_path / "blob"
        path.write_bytes(data)
        assert hash_file(path) == hash_bytes(data)

    def test_digest_is_64_hex_chars(self) -> None:
        digest = compute_fingerprint(b"collection", [AssetEntry("a.png", 3)])
        assert len(digest) == 64
        assert set(digest) <= set("0123456789abcdef")


class TestFingerprint:
    def test_without_manifest_equals_plain_sha256(self) -> None:
        assert compute_fingerprint(b"data") == hash_bytes(b"data")
        assert compute_fingerprint(b"data", []) == hash_bytes(b"data")

    def test_path_and_bytes_inputs_agree(self, tmp_path: Path) -> None:
        path = tmp_path / "c.anki2"
        path.write_bytes(b"payload")
        manifest = [AssetEntry("b.mp3", 10), AssetEntry("a.png", 4)]
        assert compute_fingerprint(path, manifest) == compute_fingerprint(b"payload", manifest)

    def test_manifest_changes_digest(self) -> None:
        base = compute_fingerprint(b"data")
        with_asset = compute_fingerprint(b"data", [AssetEntry("a.png", 1)])
        assert base != with_asset

    def test_asset_size_changes_digest(self) -> None:
        a = compute_fingerprint(b"data", [AssetEntry("a.png", 1)])
        b = compute_fingerprint(b"data", [AssetEntry("a.png", 2)])
        assert a != b

    def test_name_boundaries_do_not_alias(self) -> None:
        a = compute_fingerprint(b"data", [AssetEntry("ab", 1), AssetEntry("c", 1)])
        b = compute_fingerprint(b"data", [AssetEntry("a", 1), AssetEntry("bc", 1)])
        assert a != b

    def test_canonical_manifest_sorts_by_name_then_size(self) -> None:
        entries = [AssetEntry("b", 1), AssetEntry("a", 2), AssetEntry("a", 1)]
        assert canonical_manifest(entries) == [
            AssetEntry("a", 1),
            AssetEntry("a", 2),
            AssetEntry("b", 1),
        ]


class TestFingerprintProperties:
    @PROPERTY_SETTINGS
    @given(content=st.binary(max_size=512), manifest=_MANIFEST)
    def test_deterministic(self, content: bytes, manifest: list[AssetEntry]) -> None:
        assert compute_fingerprint(content, manifest) == compute_fingerprint(content, manifest)

    @PROPERTY_SETTINGS
    @given(content=st.binary(max_size=512), manifest=_MANIFEST, data=st.data())
    def test_manifest_order_is_irrelevant(
        self, content: bytes, manifest: list[AssetEntry], data: st.DataObject
    ) -> None:
        shuffled = data.draw(st.permutations(manifest))
        assert compute_fingerprint(content, manifest) == compute_fingerprint(content, shuffled)

    @PROPERTY_SETTINGS
    @given(a=st.binary(max_size=256), b=st.binary(max_size=256), manifest=_MANIFEST)
    def test_different_content_different_digest(
        self, a: bytes, b: bytes, manifest: list[AssetEntry]
    ) -> None:
        if a != b:
            assert compute_fingerprint(a, manifest) != compute_fingerprint(b, manifest)
