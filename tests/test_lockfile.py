"""Tests for crabby.lock parsing, serialization and consistency checks."""

import json

import pytest

from common.errors import LockfileInconsistent
from manifest import LockEntry, Lockfile, load_lockfile, parse_manifest, save_lockfile
from manifest.lockfile import parse_lockfile


def _manifest(deps):
    return parse_manifest(json.dumps({"name": "app", "dependencies": deps}))


def _lockfile_for(manifest, entries):
    lockfile = Lockfile(manifest_hash=manifest.dependency_hash())
    for entry in entries:
        lockfile.add(entry)
    return lockfile


class TestSerialization:
    """Round trips and stable output."""

    def test_dumps_is_sorted_and_stable(self):
        lockfile = Lockfile(manifest_hash="sha256-abc")
        lockfile.add(LockEntry(path="node_modules/b", name="b", version="1.0.0"))
        lockfile.add(
            LockEntry(
                path="node_modules/a",
                name="a",
                version="2.0.0",
                integrity="sha512-xyz",
                resolved="https://r/a.tgz",
                requires=(("b", "1.0.0"),),
            )
        )
        text = lockfile.dumps()
        assert text.endswith("\n")
        assert text.index('"node_modules/a"') < text.index('"node_modules/b"')
        assert parse_lockfile(text).dumps() == text

    def test_requires_shape(self):
        entry = LockEntry(path="node_modules/a", name="a", version="1.0.0", requires=(("b", "2.0.0"),))
        assert entry.to_dict()["requires"] == [{"name": "b", "version": "2.0.0"}]
        assert "dev" not in entry.to_dict()

    def test_unknown_fields_survive(self, tmp_path):
        data = {
            "lockfileVersion": 1,
            "manifestHash": "sha256-abc",
            "generator": "crabby",
            "packages": {
                "node_modules/a": {"name": "a", "version": "1.0.0", "funding": "https://example.com"}
            },
        }
        path = tmp_path / "crabby.lock"
        path.write_text(json.dumps(data))
        lockfile = load_lockfile(path)
        save_lockfile(lockfile, path)

        again = json.loads(path.read_text())
        assert again["generator"] == "crabby"
        assert again["packages"]["node_modules/a"]["funding"] == "https://example.com"

    def test_missing_and_malformed_are_absent(self, tmp_path):
        assert load_lockfile(tmp_path / "crabby.lock") is None
        (tmp_path / "crabby.lock").write_text("{nope")
        assert load_lockfile(tmp_path / "crabby.lock") is None

    def test_entry_without_version_rejected(self):
        with pytest.raises(ValueError):
            parse_lockfile('{"packages": {"node_modules/a": {"name": "a"}}}')

    def test_name_defaults_from_path(self):
        lockfile = parse_lockfile('{"packages": {"node_modules/@s/a": {"version": "1.0.0"}}}')
        assert lockfile.get("node_modules/@s/a").name == "@s/a"


class TestConsistency:
    """When a lockfile may replace resolution."""

    def test_consistent(self):
        manifest = _manifest({"a": "^1.0.0"})
        lockfile = _lockfile_for(manifest, [LockEntry(path="node_modules/a", name="a", version="1.2.0")])
        lockfile.check_consistency(manifest)
        assert lockfile.is_consistent(manifest)

    def test_hash_drift(self):
        manifest = _manifest({"a": "^1.0.0"})
        lockfile = _lockfile_for(manifest, [LockEntry(path="node_modules/a", name="a", version="1.2.0")])
        lockfile.manifest_hash = "sha256-stale"
        with pytest.raises(LockfileInconsistent):
            lockfile.check_consistency(manifest)

    def test_missing_entry(self):
        manifest = _manifest({"a": "^1.0.0", "b": "^1.0.0"})
        lockfile = _lockfile_for(manifest, [LockEntry(path="node_modules/a", name="a", version="1.2.0")])
        assert not lockfile.is_consistent(manifest)

    def test_unsatisfied_range(self):
        manifest = _manifest({"a": "^2.0.0"})
        lockfile = _lockfile_for(manifest, [LockEntry(path="node_modules/a", name="a", version="1.2.0")])
        with pytest.raises(LockfileInconsistent, match="locked to 1.2.0"):
            lockfile.check_consistency(manifest)

    def test_workspace_entries(self):
        manifest = _manifest({"lib": "workspace:*"})
        workspace = LockEntry(path="node_modules/lib", name="lib", version="0.1.0", source="workspace")
        assert _lockfile_for(manifest, [workspace]).is_consistent(manifest)
        registry = LockEntry(path="node_modules/lib", name="lib", version="0.1.0")
        assert not _lockfile_for(manifest, [registry]).is_consistent(manifest)
