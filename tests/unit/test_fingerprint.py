"""Tests for the fingerprint module: Fingerprint type, file hashing and target fingerprints."""

from __future__ import annotations

import pytest

from kiln.build.fingerprint import (
    MISSING_FILE,
    Fingerprint,
    available_algorithms,
    compute_digest,
    compute_target_fingerprint,
    hash_file,
    hash_files,
    hash_text,
)


class TestFingerprint:
    """Tests for the Fingerprint dataclass."""

    def test_matches_equal(self):
        """Equal but distinct fingerprints match."""
        fp1 = Fingerprint(scheme="kiln:test:v1", digest="abc123", components={"a": "1"})
        fp2 = Fingerprint(scheme="kiln:test:v1", digest="abc123", components={"a": "1"})
        assert fp1.matches(fp2) is True

    def test_matches_different_digest(self):
        """Different digest means no match."""
        fp1 = Fingerprint(scheme="kiln:test:v1", digest="abc123", components={"a": "1"})
        fp2 = Fingerprint(scheme="kiln:test:v1", digest="def456", components={"a": "2"})
        assert fp1.matches(fp2) is False

    def test_matches_different_scheme(self):
        """Different scheme means no match, even with same digest."""
        fp1 = Fingerprint(scheme="kiln:test:v1", digest="abc123", components={"a": "1"})
        fp2 = Fingerprint(scheme="kiln:test:v2", digest="abc123", components={"a": "1"})
        assert fp1.matches(fp2) is False

    def test_matches_none(self):
        fp = Fingerprint(scheme="kiln:test:v1", digest="abc123", components={"a": "1"})
        assert fp.matches(None) is False

    def test_explain_diff_none(self):
        fp = Fingerprint(scheme="kiln:test:v1", digest="abc123", components={"a": "1"})
        assert fp.explain_diff(None) == ["no stored fingerprint"]

    def test_explain_diff_scheme_changed(self):
        fp1 = Fingerprint(scheme="kiln:test:v2", digest="abc123", components={"a": "1"})
        fp2 = Fingerprint(scheme="kiln:test:v1", digest="abc123", components={"a": "1"})
        result = fp1.explain_diff(fp2)
        assert len(result) == 1
        assert "scheme changed" in result[0]

    def test_explain_diff_component_changed(self):
        """Diff identifies which components changed."""
        fp1 = Fingerprint(scheme="kiln:test:v1", digest="aaa", components={"command": "new", "deps": "same"})
        fp2 = Fingerprint(scheme="kiln:test:v1", digest="bbb", components={"command": "old", "deps": "same"})
        assert fp1.explain_diff(fp2) == ["command changed"]

    def test_round_trip_dict(self):
        fp = Fingerprint(scheme="kiln:test:v1", digest="abc", components={"a": "1"})
        assert Fingerprint.from_dict(fp.to_dict()) == fp

    def test_from_empty_dict(self):
        assert Fingerprint.from_dict({}) is None
        assert Fingerprint.from_dict(None) is None


class TestHashing:
    def test_default_is_blake2b(self):
        assert hash_text("x") == hash_text("x", "blake2b")

    def test_algorithms_differ(self):
        digests = {hash_text("x", algo) for algo in available_algorithms()}
        assert len(digests) == len(available_algorithms())

    def test_unknown_algorithm(self):
        with pytest.raises(ValueError, match="Unknown hash algorithm"):
            hash_text("x", "crc32")

    def test_hash_file_content(self, tmp_path):
        """File hashes follow content, not path."""
        a = tmp_path / "a.txt"
        b = tmp_path / "b.txt"
        a.write_text("same")
        b.write_text("same")
        assert hash_file(a) == hash_file(b)
        b.write_text("different")
        assert hash_file(a) != hash_file(b)

    def test_hash_missing_file(self, tmp_path):
        assert hash_file(tmp_path / "absent") == MISSING_FILE

    def test_hash_directory_follows_contents(self, tmp_path):
        """Editing, adding or renaming a file inside a directory changes its hash."""
        data = tmp_path / "data"
        (data / "sub").mkdir(parents=True)
        (data / "a.csv").write_text("1,2")
        (data / "sub" / "b.csv").write_text("3,4")

        first = hash_file(data)
        assert first != MISSING_FILE
        assert hash_file(data) == first

        (data / "a.csv").write_text("1,2,5")
        edited = hash_file(data)
        assert edited != first

        (data / "c.csv").write_text("")
        added = hash_file(data)
        assert added != edited

        (data / "c.csv").rename(data / "d.csv")
        assert hash_file(data) != added

    def test_empty_directory_is_not_missing(self, tmp_path):
        (tmp_path / "empty").mkdir()
        assert hash_file(tmp_path / "empty") != MISSING_FILE

    def test_hash_files_sorted_and_unique(self, tmp_path):
        a = tmp_path / "a.txt"
        a.write_text("1")
        result = hash_files([str(a), str(a)])
        assert list(result) == [str(a)]

    def test_compute_digest_order_independent(self):
        assert compute_digest({"a": "1", "b": "2"}) == compute_digest({"b": "2", "a": "1"})


class TestTargetFingerprint:
    def test_deterministic(self):
        """Identical inputs give the identical fingerprint."""
        fp1 = compute_target_fingerprint("fit(rec)", {"rec": "d1"}, {"a.csv": "h1"})
        fp2 = compute_target_fingerprint("fit(rec)", {"rec": "d1"}, {"a.csv": "h1"})
        assert fp1 == fp2
        assert fp1.matches(fp2)

    def test_command_change(self):
        fp1 = compute_target_fingerprint("fit(rec)", {}, {})
        fp2 = compute_target_fingerprint("fit(rec, 2)", {}, {})
        assert not fp1.matches(fp2)
        assert fp1.explain_diff(fp2) == ["command changed"]

    def test_upstream_change(self):
        fp1 = compute_target_fingerprint("fit(rec)", {"rec": "d1"}, {})
        fp2 = compute_target_fingerprint("fit(rec)", {"rec": "d2"}, {})
        assert fp1.explain_diff(fp2) == ["deps changed"]

    def test_file_change(self):
        fp1 = compute_target_fingerprint("x", {}, {"a.csv": "h1"})
        fp2 = compute_target_fingerprint("x", {}, {"a.csv": "h2"})
        assert fp1.explain_diff(fp2) == ["files changed"]

    def test_format_change(self):
        fp1 = compute_target_fingerprint("x", {}, {}, format="pickle")
        fp2 = compute_target_fingerprint("x", {}, {}, format="json")
        assert fp1.explain_diff(fp2) == ["format changed"]

    def test_scheme_names_algorithm(self):
        fp = compute_target_fingerprint("x", {}, {}, algorithm="sha256")
        assert fp.scheme == "kiln:target:v1:sha256"
        assert len(fp.digest) == 64

    def test_algorithm_change_is_scheme_change(self):
        fp1 = compute_target_fingerprint("x", {}, {}, algorithm="md5")
        fp2 = compute_target_fingerprint("x", {}, {})
        assert not fp1.matches(fp2)
        assert "scheme changed" in fp1.explain_diff(fp2)[0]
