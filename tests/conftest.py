"""Shared fixtures: an in-memory registry and tarball helpers."""

import io
import json
import tarfile
import threading
from pathlib import Path

import pytest

from cache.store import PackageCache
from common.errors import NetworkError
from common.integrity import compute
from install.scripts import CommandResult, ScriptRunner
from registry.base import VersionRecord


def make_tarball(files, top="package"):
    """Build a .tgz whose entries live under ``top/``.

    ``files`` maps relative paths to text, bytes, or (content, mode) tuples.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as archive:
        for path, content in files.items():
            mode = 0o644
            if isinstance(content, tuple):
                content, mode = content
            if isinstance(content, str):
                content = content.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{path}")
            info.size = len(content)
            info.mode = mode
            archive.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def write_manifest(directory, data):
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "package.json"
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


class FakeRegistry:
    """RegistryClient double that counts metadata queries and downloads."""

    def __init__(self):
        self._packages = {}  # name -> {version: (deps, tarball bytes, integrity)}
        self.tags = {}
        self.metadata_queries = 0
        self.tarball_fetches = 0
        self.failures = {}  # url -> number of failures still to inject
        self._lock = threading.Lock()

    @staticmethod
    def tarball_url(name, version):
        return f"https://registry.test/{name}/-/{name.split('/')[-1]}-{version}.tgz"

    def publish(self, name, version, dependencies=None, *, files=None, bin=None, scripts=None, integrity=None):
        deps = dict(dependencies or {})
        manifest = {"name": name, "version": version, "dependencies": deps}
        if bin is not None:
            manifest["bin"] = bin
        if scripts:
            manifest["scripts"] = scripts
        contents = {"package.json": json.dumps(manifest), "index.js": f"module.exports = '{name}@{version}';\n"}
        contents.update(files or {})
        data = make_tarball(contents)
        self._packages.setdefault(name, {})[version] = (deps, data, integrity or str(compute(data)))
        return self

    def fail(self, name, version, times):
        self.failures[self.tarball_url(name, version)] = times

    def get_versions(self, name):
        with self._lock:
            self.metadata_queries += 1
        return [
            VersionRecord(version=v, integrity=integ, tarball=self.tarball_url(name, v), dependencies=dict(deps))
            for v, (deps, _, integ) in self._packages.get(name, {}).items()
        ]

    def get_dist_tags(self, name):
        with self._lock:
            self.metadata_queries += 1
        return dict(self.tags.get(name, {}))

    def fetch_tarball(self, url):
        with self._lock:
            self.tarball_fetches += 1
            remaining = self.failures.get(url, 0)
            if remaining:
                self.failures[url] = remaining - 1
                raise NetworkError(f"injected failure for {url}")
        for name, versions in self._packages.items():
            for version, (_, data, _) in versions.items():
                if self.tarball_url(name, version) == url:
                    return data
        raise NetworkError(f"404 for {url}")


class RecordingExecutor:
    """CommandExecutor double: records every command instead of spawning a shell."""

    def __init__(self, failing=None):
        self.calls = []  # (package name, event, command, env)
        self.failing = dict(failing or {})  # command -> return code

    def execute(self, command, *, cwd, env, timeout=None):
        self.calls.append((env["npm_package_name"], env["npm_lifecycle_event"], command, env))
        code = self.failing.get(command, 0)
        return CommandResult(returncode=code, output=f"ran {command}\n")

    @property
    def order(self):
        return [(name, event) for name, event, _, _ in self.calls]


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def cache(tmp_path):
    return PackageCache(tmp_path / "cache")


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def runner(executor):
    return ScriptRunner(executor=executor, timeout=5)


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root
