"""Tests for the fetch/extract/link/script pipeline."""

import dataclasses
import json
import os

import pytest

from constants import ExitCodes
from common.errors import IntegrityMismatch, NetworkError, ScriptError
from install import Installer, InstallPlan, ScriptRunner
from install.pipeline import materialize
from manifest import parse_manifest
from resolver import DependencyResolver

from conftest import RecordingExecutor

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX symlinks")


def _manifest(dependencies=None, **extra):
    data = {"name": "app", "version": "1.0.0", "dependencies": dependencies or {}}
    data.update(extra)
    return parse_manifest(json.dumps(data))


def _install(registry, cache, root, manifest, runner, **kwargs):
    graph, _ = DependencyResolver(registry).resolve(manifest)
    installer = Installer(
        root, registry, cache, script_runner=runner, root_manifest=manifest, sleep=lambda _: None, **kwargs
    )
    return installer.install(graph)


class TestPlan:
    """Plan ordering and paths."""

    def test_postorder_and_bin_paths(self, registry, project):
        registry.publish("A", "1.0.0", {"C": "^1.0.0"})
        registry.publish("B", "1.0.0", {"C": "^2.0.0"})
        registry.publish("C", "1.0.0").publish("C", "2.0.0")
        graph, _ = DependencyResolver(registry).resolve(_manifest({"A": "^1.0.0", "B": "^1.0.0"}))

        plan = InstallPlan.from_graph(graph, project)
        order = [step.package.location for step in plan]
        assert order == [
            "node_modules/C",
            "node_modules/A",
            "node_modules/B/node_modules/C",
            "node_modules/B",
        ]
        nested = plan.steps[2]
        assert nested.bin_dir == project / "node_modules/B/node_modules/.bin"
        assert nested.path_dirs[-1] == project / "node_modules/.bin"
        assert plan.scope_names(graph) == {"A", "B", "C"}


class TestInstall:
    """End-to-end installs against the fake registry."""

    def test_files_are_materialized(self, registry, cache, project, runner):
        registry.publish("left-pad", "1.3.1")
        report = _install(registry, cache, project, _manifest({"left-pad": "^1.3.0"}), runner)

        assert report.ok
        assert report.installed == ["left-pad@1.3.1"]
        assert report.fetched == 1
        assert report.exit_code is ExitCodes.SUCCESS
        installed = json.loads((project / "node_modules/left-pad/package.json").read_text())
        assert installed["version"] == "1.3.1"

    def test_nested_copies_survive_parent_install(self, registry, cache, project, runner):
        registry.publish("A", "1.0.0", {"C": "^1.0.0"})
        registry.publish("B", "1.0.0", {"C": "^2.0.0"})
        registry.publish("C", "1.0.0").publish("C", "2.0.0")
        report = _install(registry, cache, project, _manifest({"A": "^1.0.0", "B": "^1.0.0"}), runner)

        assert report.ok
        nested = json.loads((project / "node_modules/B/node_modules/C/package.json").read_text())
        assert nested["version"] == "2.0.0"
        assert (project / "node_modules/B/index.js").is_file()

    def test_scripts_run_in_postorder(self, registry, cache, project, executor, runner):
        registry.publish("A", "1.0.0", {"B": "^1.0.0"}, scripts={"postinstall": "echo A"})
        registry.publish("B", "1.0.0", scripts={"preinstall": "echo pre-B", "postinstall": "echo B"})
        manifest = _manifest({"A": "^1.0.0"}, scripts={"postinstall": "echo root"})
        report = _install(registry, cache, project, manifest, runner)

        assert report.ok
        assert executor.order == [
            ("B", "preinstall"),
            ("B", "postinstall"),
            ("A", "postinstall"),
            ("app", "postinstall"),
        ]
        env = executor.calls[0][3]
        assert env["npm_package_version"] == "1.0.0"
        assert env["PATH"].startswith(str(project / "node_modules/B/node_modules/.bin"))

    def test_script_failure_is_not_fatal(self, registry, cache, project):
        executor = RecordingExecutor(failing={"exit 1": 1})
        runner = ScriptRunner(executor=executor)
        registry.publish("A", "1.0.0", {"B": "^1.0.0"}, scripts={"postinstall": "echo A"})
        registry.publish("B", "1.0.0", scripts={"preinstall": "exit 1", "postinstall": "echo B"})
        report = _install(registry, cache, project, _manifest({"A": "^1.0.0"}), runner)

        assert report.ok
        assert report.exit_code is ExitCodes.EXIT_WARNINGS
        assert report.installed == ["B@1.0.0", "A@1.0.0"]
        assert len(report.failed_scripts) == 1
        failure = report.failed_scripts[0]
        assert isinstance(failure, ScriptError)
        assert (failure.package, failure.event, failure.returncode) == ("B", "preinstall", 1)
        assert ("B", "postinstall") not in executor.order
        assert ("A", "postinstall") in executor.order
        assert (project / "node_modules/B/package.json").is_file()

    def test_transient_failures_are_retried(self, registry, cache, project, runner):
        registry.publish("a", "1.0.0")
        registry.fail("a", "1.0.0", times=2)
        report = _install(registry, cache, project, _manifest({"a": "^1.0.0"}), runner)

        assert report.ok
        assert registry.tarball_fetches == 3

    def test_network_failure_aborts(self, registry, cache, project, runner):
        registry.publish("good", "1.0.0")
        registry.publish("bad", "1.0.0")
        registry.fail("bad", "1.0.0", times=10)
        report = _install(registry, cache, project, _manifest({"good": "^1.0.0", "bad": "^1.0.0"}), runner)

        assert not report.ok
        assert isinstance(report.fatal_error, NetworkError)
        assert report.exit_code is ExitCodes.CONNECTION_ERROR
        assert "bad@1.0.0" in report.failed
        assert "bad@1.0.0" not in report.installed
        assert not (project / "node_modules/bad").exists()
        assert cache.lookup("bad", "1.0.0") is None

    def test_integrity_mismatch_aborts_without_cache_entry(self, registry, cache, project, runner):
        registry.publish("a", "1.0.0", integrity="sha512-" + "A" * 88)
        report = _install(registry, cache, project, _manifest({"a": "^1.0.0"}), runner)

        assert isinstance(report.fatal_error, IntegrityMismatch)
        assert registry.tarball_fetches == 3
        assert cache.lookup("a", "1.0.0") is None
        assert not (project / "node_modules/a").exists()

    def test_cache_is_shared_between_projects(self, registry, cache, tmp_path, runner):
        registry.publish("a", "1.0.0")
        manifest = _manifest({"a": "^1.0.0"})
        first = _install(registry, cache, tmp_path / "one", manifest, runner)
        second = _install(registry, cache, tmp_path / "two", manifest, runner)

        assert first.fetched == 1
        assert second.cache_hits == 1
        assert second.fetched == 0
        assert registry.tarball_fetches == 1
        assert (tmp_path / "two/node_modules/a/index.js").is_file()

    def test_same_version_at_several_locations_is_downloaded_once(self, registry, cache, project, runner):
        registry.publish("A", "1.0.0", {"D": "^2.0.0"})
        registry.publish("B", "1.0.0", {"D": "^2.0.0"})
        registry.publish("D", "1.0.0").publish("D", "2.0.0")
        manifest = _manifest({"A": "^1.0.0", "B": "^1.0.0", "D": "^1.0.0"})
        report = _install(registry, cache, project, manifest, runner, concurrency=8)

        assert report.ok
        assert registry.tarball_fetches == 4
        assert report.fetched == 4
        assert report.cache_hits == 1
        for owner in ("A", "B"):
            nested = json.loads((project / f"node_modules/{owner}/node_modules/D/package.json").read_text())
            assert nested["version"] == "2.0.0"

    def test_dev_packages_can_be_skipped(self, registry, cache, project, runner):
        registry.publish("lib", "1.0.0").publish("jest", "1.0.0")
        manifest = _manifest({"lib": "^1.0.0"}, devDependencies={"jest": "^1.0.0"})
        report = _install(registry, cache, project, manifest, runner, include_dev=False)

        assert report.installed == ["lib@1.0.0"]
        assert not (project / "node_modules/jest").exists()

    def test_extraneous_packages_are_pruned(self, registry, cache, project, runner):
        (project / "node_modules/stale").mkdir(parents=True)
        (project / "node_modules/@old/thing").mkdir(parents=True)
        registry.publish("a", "1.0.0")
        report = _install(registry, cache, project, _manifest({"a": "^1.0.0"}), runner)

        assert report.ok
        assert not (project / "node_modules/stale").exists()
        assert not (project / "node_modules/@old").exists()
        assert (project / "node_modules/a").is_dir()

    def test_reinstall_drops_nested_copies_no_longer_placed(self, registry, cache, project, runner):
        registry.publish("B", "1.0.0", {"C": "^2.0.0", "X": "^2.0.0"})
        registry.publish("C", "1.0.0").publish("C", "2.0.0")
        registry.publish("X", "1.0.0").publish("X", "2.0.0")
        first = _install(registry, cache, project, _manifest({"C": "^1.0.0", "X": "^1.0.0", "B": "^1.0.0"}), runner)
        assert first.ok
        assert (project / "node_modules/B/node_modules/C").is_dir()

        registry.publish("C", "2.1.0")
        second = _install(registry, cache, project, _manifest({"C": "^2.0.0", "X": "^1.0.0", "B": "^1.0.0"}), runner)

        assert second.ok
        assert not (project / "node_modules/B/node_modules/C").exists()
        nested_x = json.loads((project / "node_modules/B/node_modules/X/package.json").read_text())
        assert nested_x["version"] == "2.0.0"
        root_c = json.loads((project / "node_modules/C/package.json").read_text())
        assert root_c["version"] == "2.1.0"

    @posix_only
    def test_bins_are_linked(self, registry, cache, project, runner):
        registry.publish(
            "tool",
            "1.0.0",
            bin={"tool": "bin/tool.js"},
            files={"bin/tool.js": "#!/usr/bin/env node\n"},
        )
        report = _install(registry, cache, project, _manifest({"tool": "^1.0.0"}), runner)

        assert report.ok
        link = project / "node_modules/.bin/tool"
        assert link.is_symlink()
        assert os.readlink(link) == os.path.join("..", "tool", "bin", "tool.js")
        assert os.access(link, os.X_OK)

    def test_computed_integrity_is_reported(self, registry, cache, project, runner):
        registry.publish("a", "1.0.0")
        graph, _ = DependencyResolver(registry).resolve(_manifest({"a": "^1.0.0"}))
        expected = graph.packages[0].integrity
        graph.packages[0] = dataclasses.replace(graph.packages[0], integrity="")

        report = Installer(project, registry, cache, script_runner=runner).install(graph)

        assert report.ok
        assert report.integrities == {"node_modules/a": expected}


class TestMaterialize:
    """Copy/hard-link into place."""

    def test_replaces_existing_tree(self, tmp_path):
        source = tmp_path / "src"
        (source / "lib").mkdir(parents=True)
        (source / "lib/a.js").write_text("a")
        target = tmp_path / "node_modules/pkg"
        (target / "old").mkdir(parents=True)

        materialize(source, target)

        assert (target / "lib/a.js").read_text() == "a"
        assert not (target / "old").exists()
        assert not list(tmp_path.glob("node_modules/.pkg.crabby-tmp"))

    def test_keeps_nested_modules(self, tmp_path):
        source = tmp_path / "src"
        source.mkdir()
        (source / "index.js").write_text("x")
        target = tmp_path / "node_modules/pkg"
        (target / "node_modules/dep").mkdir(parents=True)

        materialize(source, target, keep_nested=True)

        assert (target / "index.js").is_file()
        assert (target / "node_modules/dep").is_dir()
