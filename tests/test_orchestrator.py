"""Tests for the per-repository poll orchestrator."""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from autobuild.build.scheduler import BuildScheduler
from autobuild.config.schema import RepoConfig
from autobuild.discovery.engine import DiscoveryEngine
from autobuild.poll.orchestrator import PollOrchestrator, _next_delay
from autobuild.sync.service import RepositorySync
from autobuild.types import Succeeded
from conftest import FakeRunner, git_remote

URL = "https://example.com/org/flake"

ONE_PACKAGE = {
    "packages": {
        "x86_64-linux": {"foo": {"type": "derivation", "name": "foo-1.0", "description": ""}},
    }
}


def make_orchestrator(
    tmp_path: Path,
    runner: FakeRunner,
    allowed: list[str],
    **repo_kwargs,
) -> PollOrchestrator:
    repo_kwargs.setdefault("branches", ["main"])
    repo_kwargs.setdefault("build_depth", 2)
    config = RepoConfig(url=URL, name="flake", **repo_kwargs)
    sync = RepositorySync(config, tmp_path / "repos", runner=runner)
    return PollOrchestrator(
        config=config,
        sync=sync,
        discovery=DiscoveryEngine(runner=runner, max_parallel=4),
        scheduler=BuildScheduler(pool_size=2, runner=runner),
        allowed_platforms=allowed,
    )


def script_scenario(runner: FakeRunner, tmp_path: Path) -> None:
    """main: c1 (tip) -> c2; c1 has one x86_64-linux package, c2 has none."""
    git_remote(runner, tmp_path / "repos" / "flake", URL, {"main": ["c1", "c2", "c3"]})
    runner.on("flake", "show", contains=("?rev=c1",), stdout=json.dumps(ONE_PACKAGE))
    runner.on("flake", "show", contains=("?rev=c2",), stdout="{}")
    runner.on("build", stdout="/nix/store/aaa-foo-1.0\n")


class TestScenarios:
    """End-to-end cycles over a scripted git remote and nix."""

    @pytest.mark.asyncio
    async def test_one_target_built(self, tmp_path: Path, runner: FakeRunner):
        script_scenario(runner, tmp_path)
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"])

        await orchestrator.scheduler.start()
        try:
            report = await orchestrator.run_cycle()
        finally:
            await orchestrator.scheduler.stop()

        assert [c.hash for c in report.commits] == ["c1", "c2"]
        assert len(runner.matching("flake", "show")) == 2
        assert report.discovered == 1
        assert report.selected == 1
        assert len(report.results) == 1
        result = report.results[0]
        assert result.target.attr_path == "packages.x86_64-linux.foo"
        assert result.target.commit.hash == "c1"
        assert result.outcome == Succeeded(("/nix/store/aaa-foo-1.0",))
        assert len(runner.matching("build")) == 1
        assert orchestrator.phase == "idle"
        assert orchestrator.cycles == 1

    @pytest.mark.asyncio
    async def test_platform_not_allowed(self, tmp_path: Path, runner: FakeRunner):
        script_scenario(runner, tmp_path)
        orchestrator = make_orchestrator(tmp_path, runner, ["aarch64-linux"])

        with patch.object(orchestrator.scheduler, "submit", new=AsyncMock()) as submit:
            report = await orchestrator.run_cycle()

        submit.assert_not_called()
        assert report.discovered == 1
        assert report.selected == 0
        assert report.results == []
        assert runner.matching("build") == []
        assert orchestrator.phase == "idle"

    @pytest.mark.asyncio
    async def test_discovery_failure_skips_only_that_commit(self, tmp_path: Path, runner: FakeRunner):
        script_scenario(runner, tmp_path)
        runner.on("flake", "show", contains=("?rev=c1",), returncode=1, stderr="error: evaluation aborted")
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"])

        await orchestrator.scheduler.start()
        try:
            report = await orchestrator.run_cycle()
        finally:
            await orchestrator.scheduler.stop()

        assert set(report.discovery_errors) == {"c1"}
        assert report.discovery_errors["c1"].startswith("ToolFailed")
        assert len(runner.matching("flake", "show", contains=("?rev=c2",))) == 1
        assert report.results == []
        assert orchestrator.phase == "idle"


class TestCycle:
    """Test cycle mechanics."""

    @pytest.mark.asyncio
    async def test_sync_error_ends_cycle(self, tmp_path: Path, runner: FakeRunner):
        runner.on("clone", returncode=128, stderr="fatal: repository not found")
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"])

        report = await orchestrator.run_cycle()

        assert "repository not found" in report.sync_error
        assert runner.matching("flake", "show") == []
        assert orchestrator.phase == "idle"
        assert orchestrator.cycles == 1

    @pytest.mark.asyncio
    async def test_shared_commit_discovered_once(self, tmp_path: Path, runner: FakeRunner):
        """A commit reachable from two branches is evaluated and built once."""
        git_remote(runner, tmp_path / "repos" / "flake", URL, {"main": ["c1"], "dev": ["c1"]})
        runner.on("flake", "show", stdout=json.dumps(ONE_PACKAGE))
        runner.on("build", stdout="/nix/store/aaa-foo\n")
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"], branches=[], build_depth=1)

        await orchestrator.scheduler.start()
        try:
            report = await orchestrator.run_cycle()
        finally:
            await orchestrator.scheduler.stop()

        assert len(runner.matching("flake", "show")) == 1
        assert len(report.results) == 1

    @pytest.mark.asyncio
    async def test_one_batch_across_commits(self, tmp_path: Path, runner: FakeRunner):
        """Targets from every commit of the cycle go to the scheduler together."""
        git_remote(runner, tmp_path / "repos" / "flake", URL, {"main": ["c1", "c2"]})
        runner.on("flake", "show", stdout=json.dumps(ONE_PACKAGE))
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"])

        with patch.object(orchestrator.scheduler, "submit", new=AsyncMock(return_value=[])) as submit:
            await orchestrator.run_cycle()

        submit.assert_awaited_once()
        batch = submit.await_args.args[0]
        assert sorted(t.commit.hash for t in batch) == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_unconditional_rebuild_by_default(self, tmp_path: Path, runner: FakeRunner):
        script_scenario(runner, tmp_path)
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"])

        await orchestrator.scheduler.start()
        try:
            await orchestrator.run_cycle()
            second = await orchestrator.run_cycle()
        finally:
            await orchestrator.scheduler.stop()

        assert len(second.results) == 1
        assert len(runner.matching("build")) == 2

    @pytest.mark.asyncio
    async def test_skip_unchanged_when_configured(self, tmp_path: Path, runner: FakeRunner):
        script_scenario(runner, tmp_path)
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"])
        orchestrator.rebuild_unchanged = False

        await orchestrator.scheduler.start()
        try:
            await orchestrator.run_cycle()
            second = await orchestrator.run_cycle()
        finally:
            await orchestrator.scheduler.stop()

        assert second.skipped_unchanged is True
        assert second.results == []
        assert len(runner.matching("build")) == 1

    @pytest.mark.asyncio
    async def test_failed_discovery_is_retried_when_unchanged(self, tmp_path: Path, runner: FakeRunner):
        """Heads only count as handled once every commit was evaluated."""
        script_scenario(runner, tmp_path)
        runner.on("flake", "show", returncode=1, stderr="error: cannot connect to nix daemon")
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"])
        orchestrator.rebuild_unchanged = False

        await orchestrator.scheduler.start()
        try:
            first = await orchestrator.run_cycle()
            runner.on("flake", "show", contains=("?rev=c1",), stdout=json.dumps(ONE_PACKAGE))
            runner.on("flake", "show", contains=("?rev=c2",), stdout="{}")
            second = await orchestrator.run_cycle()
            third = await orchestrator.run_cycle()
        finally:
            await orchestrator.scheduler.stop()

        assert set(first.discovery_errors) == {"c1", "c2"}
        assert first.results == []
        assert second.skipped_unchanged is False
        assert len(second.results) == 1
        assert third.skipped_unchanged is True

    @pytest.mark.asyncio
    async def test_launch_error_skips_only_that_commit(self, tmp_path: Path, runner: FakeRunner):
        """An OS error starting nix for one commit does not abort the cycle."""
        script_scenario(runner, tmp_path)

        def too_many_files(args):
            raise OSError(24, "Too many open files")

        runner.on("flake", "show", contains=("?rev=c2",), func=too_many_files)
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"])

        await orchestrator.scheduler.start()
        try:
            report = await orchestrator.run_cycle()
        finally:
            await orchestrator.scheduler.stop()

        assert set(report.discovery_errors) == {"c2"}
        assert "Too many open files" in report.discovery_errors["c2"]
        assert [r.target.commit.hash for r in report.results] == ["c1"]
        assert orchestrator.cycles == 1

    @pytest.mark.asyncio
    async def test_unexpected_discovery_error_contained(self, tmp_path: Path, runner: FakeRunner):
        script_scenario(runner, tmp_path)
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"])
        real = orchestrator.discovery.discover_targets

        async def flaky(path, commit):
            if commit.hash == "c2":
                raise RuntimeError("boom")
            return await real(path, commit)

        orchestrator.discovery.discover_targets = flaky
        await orchestrator.scheduler.start()
        try:
            report = await orchestrator.run_cycle()
        finally:
            await orchestrator.scheduler.stop()

        assert report.discovery_errors == {"c2": "RuntimeError: boom"}
        assert len(report.results) == 1

    @pytest.mark.asyncio
    async def test_cycle_callback(self, tmp_path: Path, runner: FakeRunner):
        script_scenario(runner, tmp_path)
        orchestrator = make_orchestrator(tmp_path, runner, [])
        reports = []
        orchestrator.on_cycle = reports.append

        report = await orchestrator.run_cycle()

        assert reports == [report]
        assert report.finished_at_ms >= report.started_at_ms
        assert orchestrator.last_report is report

    @pytest.mark.asyncio
    async def test_run_loop_survives_errors_and_stops_on_cancel(self, tmp_path: Path, runner: FakeRunner):
        """Unexpected errors are logged and the loop keeps polling until cancelled."""
        orchestrator = make_orchestrator(tmp_path, runner, ["x86_64-linux"])
        calls = 0

        async def flaky_cycle():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("unexpected")

        orchestrator.run_cycle = flaky_cycle
        with patch("autobuild.poll.orchestrator._next_delay", return_value=0.01):
            task = asyncio.create_task(orchestrator.run())
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert calls >= 2


class TestNextDelay:
    """Test timer computation."""

    def test_interval(self):
        assert _next_delay(RepoConfig(url=URL, poll_interval_sec=42)) == 42.0

    def test_cron_schedule(self):
        delay = _next_delay(RepoConfig(url=URL, schedule="* * * * *"))
        assert 0 <= delay <= 60
