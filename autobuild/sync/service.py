"""Repository synchronization: clone, verify, fetch and enumerate commits."""

import base64
import time
from pathlib import Path

from loguru import logger

from autobuild.config.schema import RepoConfig
from autobuild.errors import CloneFailed, CorruptCheckout, FetchFailed, SyncError, redact_url
from autobuild.types import CommitRef, RepositoryState
from autobuild.utils.process import CommandResult, CommandRunner, run_command


# hash, committer timestamp, subject; tab separated
LOG_FORMAT = "%H%x09%ct%x09%s"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _parse_log_line(line: str) -> tuple[str, int | None, str]:
    parts = line.strip().split("\t", 2)
    commit = parts[0]
    try:
        timestamp = int(parts[1]) if len(parts) > 1 else None
    except ValueError:
        timestamp = None
    message = parts[2] if len(parts) > 2 else ""
    return commit, timestamp, message


class RepositorySync:
    """
    Owns the on-disk checkout of one repository.

    One instance exists per configured repository and it is the only writer
    of both the checkout directory and the ``RepositoryState``.
    """

    def __init__(
        self,
        config: RepoConfig,
        checkout_dir: Path,
        runner: CommandRunner = run_command,
        git: str = "git",
        timeout: float | None = 600,
    ):
        self.config = config
        self.runner = runner
        self.git = git
        self.timeout = timeout
        self.state = RepositoryState(
            name=config.local_name,
            checkout_path=checkout_dir / config.local_name,
        )

    @property
    def path(self) -> Path:
        return self.state.checkout_path

    def _env(self) -> dict[str, str]:
        """Environment for git; carries credentials as an HTTP header, never in argv."""
        env = {"GIT_TERMINAL_PROMPT": "0"}
        credentials = self._read_credentials()
        if credentials:
            token = base64.b64encode(credentials.encode()).decode()
            env.update({
                "GIT_CONFIG_COUNT": "1",
                "GIT_CONFIG_KEY_0": "http.extraHeader",
                "GIT_CONFIG_VALUE_0": f"Authorization: Basic {token}",
            })
        return env

    def _read_credentials(self) -> str | None:
        if not self.config.credentials_file:
            return None
        path = Path(self.config.credentials_file).expanduser()
        try:
            return path.read_text().strip() or None
        except OSError as e:
            logger.error(f"Sync: cannot read credentials file {path} for {self.state.name}: {e}")
            return None

    async def _git(self, *args: str, cwd: Path | None = None, auth: bool = False) -> CommandResult:
        env = self._env() if auth else {"GIT_TERMINAL_PROMPT": "0"}
        return await self.runner(
            [self.git, *args],
            cwd=cwd if cwd is not None else self.path,
            env=env,
            timeout=self.timeout,
        )

    # ========== Clone / open ==========

    async def ensure_cloned(self) -> RepositoryState:
        """
        Make sure a trusted checkout exists, cloning it on first sight.

        Raises:
            CloneFailed: The clone could not be completed.
            CorruptCheckout: The path exists but is not a checkout of this repository.
        """
        if self.state.ready:
            return self.state

        try:
            if self._needs_clone():
                await self._clone()
            else:
                await self._verify()
        except SyncError as e:
            self.state.last_error = str(e)
            raise

        self.state.ready = True
        self.state.last_error = None
        return self.state

    def _needs_clone(self) -> bool:
        if not self.path.exists():
            return True
        return self.path.is_dir() and not any(self.path.iterdir())

    async def _clone(self) -> None:
        url = self.config.clone_url
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Sync: cloning {redact_url(url)} into {self.path}")

        result = await self._git(
            "clone", "--no-checkout", url, str(self.path),
            cwd=self.path.parent, auth=True,
        )
        if not result.ok:
            raise CloneFailed(self.state.name, result.error_text())
        logger.info(f"Sync: cloned {self.state.name}")

    async def _verify(self) -> None:
        name = self.state.name
        if not self.path.is_dir():
            raise CorruptCheckout(name, f"{self.path} exists and is not a directory")

        result = await self._git("rev-parse", "--show-toplevel")
        if not result.ok:
            raise CorruptCheckout(name, f"{self.path} is not a git checkout: {result.error_text()}")
        toplevel = Path(result.stdout.strip()).resolve()
        if toplevel != self.path.resolve():
            raise CorruptCheckout(name, f"{self.path} is inside another checkout ({toplevel})")

        result = await self._git("remote", "get-url", "origin")
        origin = result.stdout.strip()
        if not result.ok or origin != self.config.clone_url:
            raise CorruptCheckout(
                name, f"{self.path} tracks '{origin or '<none>'}', expected '{self.config.clone_url}'"
            )
        logger.info(f"Sync: opened existing checkout {self.path}")

    # ========== Fetch ==========

    async def refresh(self) -> list[CommitRef]:
        """
        Fetch the remote and enumerate the commits to evaluate.

        Returns up to ``build_depth`` commits per monitored branch, ordered
        from the tip (distance 0) to the oldest. On failure the previous
        state is left untouched.

        Raises:
            FetchFailed: Fetching or reading refs failed.
        """
        name = self.state.name
        if not self.state.ready:
            raise FetchFailed(name, "checkout is not ready")

        try:
            commits, heads = await self._fetch_and_walk()
        except SyncError as e:
            self.state.last_error = str(e)
            raise

        self.state.changed = heads != self.state.branch_heads
        self.state.branch_heads = heads
        self.state.last_fetch_at_ms = _now_ms()
        self.state.last_error = None
        return commits

    async def _fetch_and_walk(self) -> tuple[list[CommitRef], dict[str, str]]:
        name = self.state.name
        logger.debug(f"Sync: fetching {name}")

        result = await self._git("fetch", "--prune", "origin", auth=True)
        if not result.ok:
            raise FetchFailed(name, result.error_text())

        heads = await self._remote_heads()
        wanted = self.config.branches
        if wanted:
            missing = [b for b in wanted if b not in heads]
            if missing:
                logger.warning(f"Sync: {name} has no remote branch(es) {', '.join(missing)}")
            heads = {b: h for b, h in heads.items() if b in wanted}

        commits: list[CommitRef] = []
        for branch, tip in heads.items():
            result = await self._git(
                "log", "--first-parent", f"--max-count={self.config.build_depth}",
                f"--format={LOG_FORMAT}", tip,
            )
            if not result.ok:
                raise FetchFailed(name, f"log {branch}: {result.error_text()}")
            walked = [_parse_log_line(line) for line in result.stdout.splitlines() if line.strip()]
            commits.extend(
                CommitRef(repo=name, branch=branch, hash=h, distance=i, message=msg, committed_at=ts)
                for i, (h, ts, msg) in enumerate(walked[: self.config.build_depth])
            )

        logger.info(f"Sync: {name} has {len(heads)} branch(es), {len(commits)} commit(s) to evaluate")
        return commits, heads

    async def _remote_heads(self) -> dict[str, str]:
        result = await self._git(
            "for-each-ref", "--format=%(refname:lstrip=3) %(objectname)", "refs/remotes/origin",
        )
        if not result.ok:
            raise FetchFailed(self.state.name, f"for-each-ref: {result.error_text()}")

        heads: dict[str, str] = {}
        for line in result.stdout.splitlines():
            parts = line.strip().split()
            if len(parts) != 2:
                continue
            branch, commit = parts
            if branch == "HEAD":
                continue
            heads[branch] = commit
        return heads
