"""The build daemon: one poll loop per repository over a shared build pool."""

import asyncio
from typing import Any, Callable

from loguru import logger

from autobuild.build.scheduler import BuildScheduler
from autobuild.config.schema import Config
from autobuild.discovery.engine import DiscoveryEngine
from autobuild.poll.orchestrator import CycleReport, PollOrchestrator
from autobuild.reporting.status import StatusStore
from autobuild.sync.service import RepositorySync
from autobuild.types import BuildResult
from autobuild.utils.process import CommandRunner, run_command


class AutoBuildDaemon:
    """Wires sync, discovery, filtering and building for every configured repository."""

    def __init__(
        self,
        config: Config,
        runner: CommandRunner = run_command,
        on_result: Callable[[BuildResult], Any] | None = None,
    ):
        self.config = config
        self.on_result = on_result
        self.status_store = StatusStore(config.status_path, history=config.status_history)
        tools = config.tools
        pool_size = config.build_pool_size

        self.scheduler = BuildScheduler(
            pool_size=pool_size,
            runner=runner,
            nix=tools.nix,
            nix_options=tools.nix_options,
            max_error_bytes=config.max_error_bytes,
            on_result=self._on_result,
        )
        self.orchestrators: dict[str, PollOrchestrator] = {}
        for repo in config.repos:
            if not repo.enabled:
                logger.info(f"Daemon: repository {repo.local_name} disabled, skipping")
                continue
            sync = RepositorySync(
                repo,
                config.checkout_dir,
                runner=runner,
                git=tools.git,
                timeout=tools.git_timeout_sec,
            )
            # Discovery slots are never shared between repositories
            discovery = DiscoveryEngine(
                runner=runner,
                nix=tools.nix,
                nix_options=tools.nix_options,
                max_parallel=pool_size,
                stderr_limit=config.max_error_bytes,
            )
            self.orchestrators[repo.local_name] = PollOrchestrator(
                config=repo,
                sync=sync,
                discovery=discovery,
                scheduler=self.scheduler,
                allowed_platforms=config.supported_architectures,
                rebuild_unchanged=config.rebuild_unchanged,
                on_cycle=self._on_cycle,
            )

        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False

    async def _on_result(self, result: BuildResult) -> None:
        self.status_store.record_result(result)
        if self.on_result:
            ret = self.on_result(result)
            if asyncio.iscoroutine(ret):
                await ret

    def _on_cycle(self, report: CycleReport) -> None:
        orchestrator = self.orchestrators.get(report.repo)
        state = None
        if orchestrator:
            repo_state = orchestrator.sync.state
            state = {
                "ready": repo_state.ready,
                "branchHeads": dict(repo_state.branch_heads),
                "lastFetchAtMs": repo_state.last_fetch_at_ms,
                "lastError": repo_state.last_error,
            }
        self.status_store.record_cycle(report, state)

    def _prepare(self) -> None:
        self.config.checkout_dir.mkdir(parents=True, exist_ok=True)
        if not self.config.supported_architectures:
            logger.warning("Daemon: no supported architectures configured, nothing will be built")

    async def start(self) -> None:
        """Start the build pool and one poll loop per repository."""
        if self._running:
            return
        self._prepare()
        self._running = True
        await self.scheduler.start()
        for name, orchestrator in self.orchestrators.items():
            self._tasks[name] = asyncio.create_task(orchestrator.run(), name=f"poll-{name}")

        if self.orchestrators:
            logger.info(f"Daemon: started with {len(self.orchestrators)} repositories")
        else:
            logger.info("Daemon: no repositories configured, idling")

    async def stop(self) -> None:
        """Cancel poll loops and in-flight builds. Nothing is rearmed."""
        self._running = False
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        await self.scheduler.stop()
        logger.info("Daemon: stopped")

    async def run_once(self) -> list[CycleReport]:
        """Run exactly one cycle for every repository, concurrently."""
        self._prepare()
        await self.scheduler.start()
        try:
            return list(await asyncio.gather(
                *(o.run_cycle() for o in self.orchestrators.values())
            ))
        finally:
            await self.scheduler.stop()

    def status(self) -> dict[str, Any]:
        """Get daemon status."""
        return {
            "running": self._running,
            "repos": {
                name: {
                    "phase": o.phase,
                    "cycles": o.cycles,
                    "ready": o.sync.state.ready,
                    "branches": len(o.sync.state.branch_heads),
                }
                for name, o in self.orchestrators.items()
            },
            "builds": {
                "poolSize": self.scheduler.pool_size,
                "active": self.scheduler.active,
                "pending": self.scheduler.pending,
                "completed": self.scheduler.completed,
            },
        }
