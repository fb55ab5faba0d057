"""Tests for the content-addressed package cache."""

import io
import logging
import os
import tarfile

import pytest

from cache import PackageCache, extract_tarball
from common.errors import FileSystemError, IntegrityMismatch
from common.integrity import compute

from conftest import make_tarball


@pytest.fixture
def tarball():
    return make_tarball(
        {
            "package.json": '{"name": "a", "version": "1.0.0"}',
            "lib/index.js": "module.exports = 1;\n",
            "bin/cli.js": ("#!/usr/bin/env node\n", 0o755),
        }
    )


class TestStore:
    """Verification and atomic commit."""

    def test_store_then_lookup(self, cache, tarball):
        integrity = str(compute(tarball))
        entry = cache.store("a", "1.0.0", integrity, tarball)

        assert entry.integrity == integrity
        assert (entry.path / "package.json").is_file()
        assert (entry.path / "lib" / "index.js").read_text() == "module.exports = 1;\n"
        found = cache.lookup("a", "1.0.0", integrity)
        assert found is not None
        assert found.path == entry.path

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
    def test_executable_bit_preserved(self, cache, tarball):
        entry = cache.store("a", "1.0.0", "", tarball)
        assert os.access(entry.path / "bin" / "cli.js", os.X_OK)
        assert not os.access(entry.path / "lib" / "index.js", os.X_OK)

    def test_mismatch_creates_no_entry(self, cache, tarball):
        wrong = str(compute(b"something else"))
        with pytest.raises(IntegrityMismatch) as excinfo:
            cache.store("a", "1.0.0", wrong, tarball)

        assert excinfo.value.expected == wrong
        assert cache.lookup("a", "1.0.0", wrong) is None
        assert cache.lookup("a", "1.0.0") is None
        assert cache.stats() == (0, 0)

    def test_unknown_integrity_is_computed(self, cache, tarball):
        entry = cache.store("a", "1.0.0", "", tarball)
        assert entry.integrity == str(compute(tarball))
        assert cache.lookup("a", "1.0.0").path == entry.path

    def test_sha1_integrity(self, cache, tarball):
        integrity = str(compute(tarball, "sha1"))
        entry = cache.store("a", "1.0.0", integrity, tarball)
        assert entry.integrity == integrity
        assert cache.lookup("a", "1.0.0", integrity) is not None

    def test_second_store_reuses_entry(self, cache, tarball):
        first = cache.store("a", "1.0.0", "", tarball)
        second = cache.store("a", "1.0.0", "", tarball)
        assert first.path == second.path
        assert cache.stats()[0] == 1
        assert not any(cache.tmp_dir.iterdir())

    def test_scoped_names(self, cache, tarball):
        entry = cache.store("@scope/pkg", "1.0.0", "", tarball)
        assert cache.lookup("@scope/pkg", "1.0.0", entry.integrity) is not None
        assert "@scope+pkg" in entry.path.parts

    def test_corrupt_archive(self, cache):
        with pytest.raises(FileSystemError):
            cache.store("a", "1.0.0", "", b"not a tarball")
        assert cache.stats() == (0, 0)


class TestExtraction:
    """Safe extraction rules."""

    def test_unsafe_entries_skipped(self, tmp_path):
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as archive:
            for name, data in (("package/ok.txt", b"ok"), ("package/../evil.txt", b"evil")):
                info = tarfile.TarInfo(name)
                info.size = len(data)
                archive.addfile(info, io.BytesIO(data))
            link = tarfile.TarInfo("package/link")
            link.type = tarfile.SYMTYPE
            link.linkname = "/etc/passwd"
            archive.addfile(link)

        dest = tmp_path / "out"
        assert extract_tarball(buf.getvalue(), dest) == 1
        assert (dest / "ok.txt").read_bytes() == b"ok"
        assert not (tmp_path / "evil.txt").exists()
        assert not (dest / "link").exists()

    def test_any_top_level_directory_is_stripped(self, tmp_path):
        data = make_tarball({"index.js": "x"}, top="node-thing")
        extract_tarball(data, tmp_path)
        assert (tmp_path / "index.js").is_file()


class TestMaintenance:
    """stats() and clean()."""

    def test_stats_and_clean(self, tmp_path, tarball):
        cache = PackageCache(tmp_path / "cache")
        cache.store("a", "1.0.0", "", tarball)
        cache.store("b", "2.0.0", "", tarball)

        count, size = cache.stats()
        assert count == 2
        assert size > 0
        assert cache.clean() == 2
        assert cache.stats() == (0, 0)
        assert cache.lookup("a", "1.0.0") is None

    def test_empty_cache(self, tmp_path):
        cache = PackageCache(tmp_path / "nothing")
        assert cache.stats() == (0, 0)
        assert cache.clean() == 0


class TestUnusableIntegrity:
    """Values with no supported hash."""

    def test_unknown_algorithm_warns(self, cache, tarball, caplog):
        with caplog.at_level(logging.WARNING):
            entry = cache.store("a", "1.0.0", "md5-" + "A" * 22 + "==", tarball)
        assert entry.integrity == str(compute(tarball))
        assert "no supported hash" in caplog.text

    def test_empty_integrity_is_quiet(self, cache, tarball, caplog):
        with caplog.at_level(logging.WARNING):
            cache.store("a", "1.0.0", "", tarball)
        assert "no supported hash" not in caplog.text
