"""Per-repository poll loop: sync, discover, filter, build."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from loguru import logger

from autobuild.build.scheduler import BuildScheduler
from autobuild.config.schema import RepoConfig
from autobuild.discovery.engine import DiscoveryEngine
from autobuild.discovery.filter import filter_targets
from autobuild.errors import DiscoveryError, SyncError
from autobuild.sync.service import RepositorySync
from autobuild.types import BuildResult, BuildTarget, CommitRef

Phase = Literal["idle", "syncing", "discovering", "building"]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CycleReport:
    """What happened during one poll cycle of one repository."""
    repo: str
    started_at_ms: int
    finished_at_ms: int | None = None
    commits: list[CommitRef] = field(default_factory=list)
    sync_error: str | None = None
    discovery_errors: dict[str, str] = field(default_factory=dict)  # commit hash -> error
    discovered: int = 0
    selected: int = 0
    skipped_unchanged: bool = False
    results: list[BuildResult] = field(default_factory=list)

    @property
    def failed_builds(self) -> int:
        return sum(1 for r in self.results if not r.succeeded)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo": self.repo,
            "startedAtMs": self.started_at_ms,
            "finishedAtMs": self.finished_at_ms,
            "commits": [
                {
                    "branch": c.branch,
                    "hash": c.hash,
                    "distance": c.distance,
                    "message": c.message,
                    "committedAt": c.committed_at,
                }
                for c in self.commits
            ],
            "syncError": self.sync_error,
            "discoveryErrors": dict(self.discovery_errors),
            "discovered": self.discovered,
            "selected": self.selected,
            "skippedUnchanged": self.skipped_unchanged,
            "succeeded": len(self.results) - self.failed_builds,
            "failed": self.failed_builds,
        }


def _next_delay(config: RepoConfig) -> float:
    """Seconds until the next cycle of ``config``."""
    if config.schedule:
        from croniter import croniter
        now = time.time()
        return max(0.0, croniter(config.schedule, now).get_next(float) - now)
    return float(config.poll_interval_sec)


class PollOrchestrator:
    """
    Drives one repository through ``idle -> syncing -> discovering -> building``.

    Cycles of one repository never overlap. Errors are contained: a sync
    error ends the cycle, a discovery error drops one commit, a failed build
    only affects its own result.
    """

    def __init__(
        self,
        config: RepoConfig,
        sync: RepositorySync,
        discovery: DiscoveryEngine,
        scheduler: BuildScheduler,
        allowed_platforms: list[str],
        rebuild_unchanged: bool = True,
        on_cycle: Callable[[CycleReport], None] | None = None,
    ):
        self.config = config
        self.sync = sync
        self.discovery = discovery
        self.scheduler = scheduler
        self.allowed_platforms = list(allowed_platforms)
        self.rebuild_unchanged = rebuild_unchanged
        self.on_cycle = on_cycle
        self.phase: Phase = "idle"
        self.cycles = 0
        self.last_report: CycleReport | None = None
        self._handled_heads: dict[str, str] | None = None  # Heads of the last fully discovered cycle

    @property
    def name(self) -> str:
        return self.sync.state.name

    async def run(self) -> None:
        """Run cycles forever, one right away and then on the repository's timer."""
        logger.info(f"Poll: monitoring {self.name}")
        while True:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Poll: unexpected error in cycle of {self.name}")
            await asyncio.sleep(_next_delay(self.config))

    async def run_cycle(self) -> CycleReport:
        """Run one complete poll cycle and return its report."""
        report = CycleReport(repo=self.name, started_at_ms=_now_ms())
        try:
            await self._cycle(report)
        finally:
            self.phase = "idle"
        self.cycles += 1
        report.finished_at_ms = _now_ms()
        self.last_report = report
        if self.on_cycle:
            try:
                self.on_cycle(report)
            except Exception as e:
                logger.error(f"Poll: cycle callback error for {self.name}: {e}")
        return report

    async def _cycle(self, report: CycleReport) -> None:
        self.phase = "syncing"
        try:
            await self.sync.ensure_cloned()
            commits = await self.sync.refresh()
        except SyncError as e:
            logger.error(f"Poll: sync of {self.name} failed, skipping cycle: {e}")
            report.sync_error = str(e)
            return

        heads = dict(self.sync.state.branch_heads)
        commits = _unique_commits(commits)
        report.commits = commits

        if not self.rebuild_unchanged and heads == self._handled_heads:
            logger.info(f"Poll: {self.name} unchanged since last cycle, nothing to do")
            report.skipped_unchanged = True
            return

        self.phase = "discovering"
        discovered = await asyncio.gather(*(self._discover(c, report) for c in commits))
        targets = _unique_targets(t for batch in discovered for t in batch)
        selected = filter_targets(targets, self.allowed_platforms)
        report.discovered = len(targets)
        report.selected = len(selected)
        logger.info(
            f"Poll: {self.name} provides {len(targets)} derivation(s) over {len(commits)} commit(s), "
            f"{len(selected)} for allowed platforms"
        )

        if selected:
            self.phase = "building"
            report.results = await self.scheduler.submit(selected)
            logger.info(
                f"Poll: {self.name} built {len(report.results)} target(s), {report.failed_builds} failed"
            )
        if not report.discovery_errors:
            self._handled_heads = heads

    async def _discover(self, commit: CommitRef, report: CycleReport) -> list[BuildTarget]:
        try:
            return await self.discovery.discover_targets(self.sync.path, commit)
        except DiscoveryError as e:
            logger.error(
                f"Poll: discovery of {self.name}@{commit.short} ({commit.branch}) failed "
                f"[{type(e).__name__}]: {e.message}"
            )
            report.discovery_errors[commit.hash] = f"{type(e).__name__}: {e.message}"
            return []
        except Exception as e:
            logger.exception(f"Poll: unexpected error discovering {self.name}@{commit.short}")
            report.discovery_errors[commit.hash] = f"{type(e).__name__}: {e}"
            return []


def _unique_commits(commits: list[CommitRef]) -> list[CommitRef]:
    seen: set[str] = set()
    unique = []
    for commit in commits:
        if commit.hash not in seen:
            seen.add(commit.hash)
            unique.append(commit)
    return unique


def _unique_targets(targets) -> list[BuildTarget]:
    seen: set[tuple[str, str]] = set()
    unique = []
    for target in targets:
        if target.key not in seen:
            seen.add(target.key)
            unique.append(target)
    return unique
